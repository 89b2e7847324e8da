"""
RT REST 2.0 target store.

This module implements the TargetStore interface against Request Tracker's
REST 2.0 JSON API.  The LDAP id of an imported group is kept in a group
custom field (``group_id_field``).
"""

import logging
from typing import Dict, List, Any, Optional, Set
from urllib.parse import quote

from .base import (
    HTTPTargetStore,
    TargetAPIError,
    TargetUser,
    TargetGroup,
    TargetCustomField,
)

logger = logging.getLogger(__name__)

DEFAULT_GROUP_ID_FIELD = 'LDAPImport gid'


class RTRestStore(HTTPTargetStore):
    """
    RT REST 2.0 client.

    Users and groups are addressed by id once loaded; collection searches use
    the JSON search syntax of the ``/users``, ``/groups`` and
    ``/customfields`` endpoints.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.group_id_field = config.get('group_id_field', DEFAULT_GROUP_ID_FIELD)
        self.per_page = config.get('per_page', 100)
        self._max_values: Dict[str, int] = {}
        logger.info(f"Initialized RT REST client for {self.base_url}")

    # Helpers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """GET that maps 404 to None."""
        try:
            return self.request('GET', path, params=params)
        except TargetAPIError as e:
            if e.status == 404:
                return None
            raise

    def _search(self, collection: str, criteria: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Run a JSON search against a collection endpoint, following pagination."""
        items = []
        page = 1
        while True:
            response = self.request('POST', f'/{collection}', criteria,
                                    params={'page': page, 'per_page': self.per_page})
            items.extend(response.get('items', []))
            if not response.get('next_page'):
                return items
            page += 1

    def _collect(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """GET every page of a collection."""
        items = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({'page': page, 'per_page': self.per_page})
            response = self.request('GET', path, params=query)
            items.extend(response.get('items', []))
            if not response.get('next_page'):
                return items
            page += 1

    @staticmethod
    def _custom_field_values(data: Dict[str, Any]) -> Dict[str, List[str]]:
        values = {}
        for cf in data.get('CustomFields', []) or []:
            values[cf.get('name')] = cf.get('values') or []
        return values

    @staticmethod
    def _log_messages(name: str, response: Any):
        """Log the result messages RT returns for an update."""
        if isinstance(response, list):
            for message in response:
                logger.debug(f"{name}: {message}")

    def _user_from_data(self, data: Dict[str, Any]) -> TargetUser:
        return TargetUser(data['id'], data.get('Name'), data.get('EmailAddress'), fields=data)

    def _group_from_data(self, data: Dict[str, Any]) -> TargetGroup:
        return TargetGroup(data['id'], data.get('Name'), data.get('Description', ''), fields=data)

    def _load_user(self, key: Any) -> Optional[TargetUser]:
        data = self._get(f"/user/{quote(str(key), safe='')}")
        if not data or 'id' not in data:
            return None
        return self._user_from_data(data)

    def _load_group(self, group_id: Any) -> Optional[TargetGroup]:
        data = self._get(f"/group/{quote(str(group_id), safe='')}")
        if not data or 'id' not in data:
            return None
        return self._group_from_data(data)

    # Users

    def find_user(self, name: str) -> Optional[TargetUser]:
        if not name:
            return None
        return self._load_user(name)

    def find_user_by_email(self, email: str) -> Optional[TargetUser]:
        if not email:
            return None
        items = self._search('users', [{'field': 'EmailAddress', 'value': email}])
        if not items:
            return None
        return self._load_user(items[0]['id'])

    def create_user(self, fields: Dict[str, Any]) -> TargetUser:
        response = self.request('POST', '/user', fields)
        user = self._load_user(response.get('id'))
        if user is None:
            raise TargetAPIError(f"couldn't load user {fields.get('Name')} after creating it")
        return user

    def update_user(self, user: TargetUser, fields: Dict[str, Any]) -> List[str]:
        response = self.request('PUT', f'/user/{user.id}', fields)
        return response if isinstance(response, list) else []

    # Groups

    def find_group(self, name: str) -> Optional[TargetGroup]:
        items = self._search('groups', [
            {'field': 'Name', 'value': name},
            {'field': 'Domain', 'value': 'UserDefined'},
        ])
        if not items:
            return None
        return self._load_group(items[0]['id'])

    def find_group_by_external_id(self, external_id: str) -> Optional[TargetGroup]:
        items = self._search('groups', [
            {'field': f'CustomField.{{{self.group_id_field}}}', 'value': str(external_id)},
            {'field': 'Domain', 'value': 'UserDefined'},
        ])
        if not items:
            return None
        return self._load_group(items[0]['id'])

    def get_group_external_id(self, group: TargetGroup) -> Optional[str]:
        data = self._get(f'/group/{group.id}') or {}
        values = self._custom_field_values(data).get(self.group_id_field) or []
        return values[0] if values else None

    def set_group_external_id(self, group: TargetGroup, external_id: str):
        response = self.request('PUT', f'/group/{group.id}',
                                {'CustomFields': {self.group_id_field: str(external_id)}})
        self._log_messages(group.name, response)
        stored = self.get_group_external_id(group)
        if stored != str(external_id):
            logger.error(f"Couldn't store LDAP id {external_id} on group {group.name}; check that custom field "
                         f"'{self.group_id_field}' exists and applies to groups. RT said: {response}")

    def create_group(self, fields: Dict[str, Any]) -> TargetGroup:
        response = self.request('POST', '/group', fields)
        group = self._load_group(response.get('id'))
        if group is None:
            raise TargetAPIError(f"couldn't load group {fields.get('Name')} after creating it")
        return group

    def update_group(self, group: TargetGroup, fields: Dict[str, Any]) -> List[str]:
        response = self.request('PUT', f'/group/{group.id}', fields)
        if 'Name' in fields:
            group.name = fields['Name']
        if 'Description' in fields:
            group.description = fields['Description']
        return response if isinstance(response, list) else []

    # Membership

    def list_direct_user_members(self, group: TargetGroup) -> Dict[str, TargetUser]:
        items = self._collect(f'/group/{group.id}/members',
                              {'users': 1, 'groups': 0, 'recursively': 0})
        members = {}
        for item in items:
            if item.get('type') != 'user':
                continue
            user = self._load_user(item['id'])
            if user is not None:
                members[user.name] = user
        return members

    def direct_user_member_ids(self, group: TargetGroup) -> Set[Any]:
        items = self._collect(f'/group/{group.id}/members',
                              {'users': 1, 'groups': 0, 'recursively': 0})
        return {item['id'] for item in items if item.get('type') == 'user'}

    def add_group_member(self, group: TargetGroup, user: TargetUser):
        self.request('PUT', f'/group/{group.id}/members', [user.id])

    def remove_group_member(self, group: TargetGroup, user: TargetUser):
        self.request('DELETE', f'/group/{group.id}/member/{user.id}')

    # Custom fields

    def load_custom_field(self, name: str) -> Optional[TargetCustomField]:
        items = self._search('customfields', [{'field': 'Name', 'value': name}])
        if not items:
            return None
        return TargetCustomField(items[0]['id'], name)

    def custom_field_has_option(self, custom_field: TargetCustomField, value: str) -> bool:
        items = self._collect(f'/customfield/{custom_field.id}/values')
        return any(item.get('name') == value for item in items)

    def add_custom_field_option(self, custom_field: TargetCustomField, value: str):
        self.request('POST', f'/customfield/{custom_field.id}/value', {'Name': value})

    def get_custom_field_value(self, obj: TargetUser, cf_name: str) -> Optional[str]:
        data = self._get(f'/user/{obj.id}') or {}
        values = self._custom_field_values(data).get(cf_name) or []
        return values[0] if values else None

    def _user_custom_field_max_values(self, cf_name: str) -> int:
        """MaxValues of a user custom field: 1 for single-value, 0 for unlimited."""
        if cf_name not in self._max_values:
            items = self._search('customfields', [
                {'field': 'Name', 'value': cf_name},
                {'field': 'LookupType', 'value': 'RT::User'},
            ])
            data = self._get(f"/customfield/{items[0]['id']}") if items else None
            self._max_values[cf_name] = int(data.get('MaxValues') or 0) if data else 1
        return self._max_values[cf_name]

    def add_custom_field_value(self, obj: TargetUser, cf_name: str, value: str):
        max_values = self._user_custom_field_max_values(cf_name)
        if max_values == 1:
            response = self.request('PUT', f'/user/{obj.id}', {'CustomFields': {cf_name: value}})
        else:
            # REST 2.0 replaces the whole value list of a multi-value field
            data = self._get(f'/user/{obj.id}') or {}
            values = list(self._custom_field_values(data).get(cf_name) or [])
            if not value:
                logger.debug(f"{obj.name}: Leaving multi-value '{cf_name}' as it is")
                return
            if value in values:
                logger.debug(f"{obj.name}: '{cf_name}' already holds '{value}'")
                return
            values.append(value)
            if max_values:
                values = values[-max_values:]
            response = self.request('PUT', f'/user/{obj.id}', {'CustomFields': {cf_name: values}})
        self._log_messages(obj.name, response)
