"""
Per-run state shared by the user and group importers.
"""

import re
import logging
from typing import Any, Dict, Optional, Set

from ldap_import.identity import IdentityCache, membership_key
from ldap_import.mapping import AttributeMapper, MEMBER_ATTR_VALUE
from ldap_import.targets.base import TargetGroup

logger = logging.getLogger(__name__)

NUMERIC_NAME = re.compile(r'^[0-9]+$')

DEFAULT_GROUP_NAME = 'Imported from LDAP'


class ReconciliationResult:
    """Outcome of processing one directory entry."""

    CREATED = 'created'
    UPDATED = 'updated'
    SKIPPED_EXISTING = 'skipped-existing'
    SKIPPED_NO_CREATE = 'skipped-no-create'
    SKIPPED_NUMERIC_NAME = 'skipped-numeric-name'
    SKIPPED_NO_NAME = 'skipped-no-name'
    ERROR = 'error'


def is_numeric_name(name: str) -> bool:
    """Directories sometimes expose numeric ids as names; those would clash with target ids."""
    return bool(NUMERIC_NAME.match(name))


class ImportContext:
    """
    State owned by one import run.

    Holds the directory client, the target store, the mappers, the identity
    cache filled during user import and the default group handle.  A context
    must not be shared between runs.
    """

    def __init__(self, config: Dict[str, Any], ldap_client, store):
        """
        Args:
            config: Full configuration dictionary
            ldap_client: Connected LDAPClient (or a compatible object)
            store: TargetStore implementation
        """
        self.config = config
        self.ldap_client = ldap_client
        self.store = store

        ldap_config = config.get('ldap', {})
        self.settings = config.get('import', {})

        group_mapping = ldap_config.get('group_mapping') or {}
        self.user_mapper = AttributeMapper(ldap_config.get('mapping') or {})
        self.group_mapper = AttributeMapper(group_mapping)
        self.member_attr_value = group_mapping.get(MEMBER_ATTR_VALUE) or 'dn'

        self.users = IdentityCache()
        self._default_group: Optional[TargetGroup] = None
        self._default_group_members: Optional[Set[Any]] = None

    @property
    def update_users(self) -> bool:
        return bool(self.settings.get('update_users', False))

    @property
    def update_only(self) -> bool:
        return bool(self.settings.get('update_only', False))

    @property
    def create_privileged(self) -> bool:
        return bool(self.settings.get('create_privileged', False))

    @property
    def clobber_empty(self) -> bool:
        return bool(self.settings.get('clobber_empty', True))

    @property
    def skip_autogenerated_group(self) -> bool:
        return bool(self.settings.get('skip_autogenerated_group', False))

    @property
    def group_name(self) -> str:
        return self.settings.get('group_name') or DEFAULT_GROUP_NAME

    def cache_user(self, entry, name: Optional[str] = None) -> Optional[str]:
        """
        Remember which target username an LDAP user entry maps to.

        Returns:
            The username (None if the entry maps to no Name)
        """
        if name is None:
            name = self.user_mapper.build_user_object(entry).get('Name') or None
        key = membership_key(entry, self.member_attr_value)
        return self.users.remember(key, name)

    def default_group(self, do_import: bool) -> Optional[TargetGroup]:
        """
        The group every imported user is added to, created on first use.

        In a dry run a missing group is not created and None is returned.

        Raises:
            TargetAPIError: If the group cannot be loaded or created
        """
        if self._default_group is not None:
            return self._default_group

        name = self.group_name
        group = self.store.find_group(name)
        if group is None:
            if not do_import:
                logger.debug(f"Would create group {name}")
                return None
            group = self.store.create_group({'Name': name})
            self._default_group_members = set()
            logger.debug(f"Created group {name} with id {group.id}")

        self._default_group = group
        return group

    def in_default_group(self, group: TargetGroup, user) -> bool:
        """Whether the user is a direct member of the default group, listing its members once per run."""
        if self._default_group_members is None:
            self._default_group_members = self.store.direct_user_member_ids(group)
        return user.id in self._default_group_members

    def joined_default_group(self, user):
        if self._default_group_members is not None:
            self._default_group_members.add(user.id)
