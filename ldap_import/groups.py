"""
Group import: create or update target groups from LDAP group entries.

When the group mapping has an ``id`` field, the id is stored on the target
group so a group renamed in LDAP is renamed in the target instead of being
imported a second time.
"""

import time
import logging
from typing import Any, Dict, Optional, Tuple

from ldap_import.context import ImportContext, ReconciliationResult, is_numeric_name
from ldap_import.mapping import MEMBER_ATTR
from ldap_import.members import MembershipSynchronizer
from ldap_import.targets.base import TargetAPIError, TargetGroup

logger = logging.getLogger(__name__)

GROUP_FIELDS = ('Name', 'Description')


class GroupReconciler:
    """Decides whether each LDAP group is created, updated or skipped, then syncs its members."""

    def __init__(self, context: ImportContext, members: Optional[MembershipSynchronizer] = None):
        self.context = context
        self.store = context.store
        self.mapper = context.group_mapper
        self.members = members or MembershipSynchronizer(context)

    def reconcile(self, entry, do_import: bool = False) -> str:
        """
        Import one LDAP group entry and its membership.

        Returns:
            A ReconciliationResult value
        """
        group = self.mapper.build_group_object(entry, do_import=do_import)
        name = group.get('Name')

        if not name:
            logger.warning(f"No Name for group {entry.dn}, skipping: {group}")
            return ReconciliationResult.SKIPPED_NO_NAME
        if is_numeric_name(name):
            logger.debug(f"Skipping group '{name}', as it is numeric")
            return ReconciliationResult.SKIPPED_NUMERIC_NAME

        logger.debug(f"Processing group {name}")
        try:
            group_obj, result, created = self.create_or_update(group, do_import)
            if result == ReconciliationResult.SKIPPED_NO_CREATE:
                return result

            added, removed = self.members.sync(
                group_obj, name, group.get(MEMBER_ATTR), created=created, do_import=do_import
            )
        except TargetAPIError as e:
            logger.error(f"Couldn't import group {name}: {e}")
            return ReconciliationResult.ERROR

        logger.debug(f"Group {name}: {added} members added, {removed} removed")
        return result

    def create_or_update(self, group: Dict[str, Any], do_import: bool) -> Tuple[Optional[TargetGroup], str, bool]:
        """
        Create the group or update the one it resolves to.

        Returns:
            Tuple of (target group or None, result, created in this call)

        Raises:
            TargetAPIError: If the store fails
        """
        name = group['Name']
        external_id = group.get('id')
        fields = {field: group[field] for field in GROUP_FIELDS if field in group}

        group_obj = self.find_group(group, do_import)

        if group_obj is not None:
            if do_import:
                logger.debug(f"Group {name} already exists as {group_obj.id}, updating their data")
                changes = self.store.update_group(group_obj, fields)
                logger.debug('\n'.join(str(change) for change in changes) or 'no change')
            else:
                logger.info(f"Found existing group {name} to update")
                self._show_group_info(fields, group_obj)
            return group_obj, ReconciliationResult.UPDATED, False

        if self.context.update_only:
            logger.debug(f"Group {name} doesn't exist in RT, skipping")
            return None, ReconciliationResult.SKIPPED_NO_CREATE, False

        if not do_import:
            logger.info(f"Found new group {name} to create in RT")
            self._show_group_info(fields)
            return None, ReconciliationResult.CREATED, False

        group_obj = self.store.create_group(fields)
        logger.debug(f"Created group for {name} with id {group_obj.id}")
        if external_id:
            self.store.set_group_external_id(group_obj, external_id)
        return group_obj, ReconciliationResult.CREATED, True

    def find_group(self, group: Dict[str, Any], do_import: bool) -> Optional[TargetGroup]:
        """
        Find the target group an LDAP group corresponds to.

        Without an ``id`` this is a lookup by name.  With one:

        - a group with this name and this id is used as is;
        - a group with this name and no id adopts the id, unless another
          group already carries it;
        - a group with this name that is in the way (another group has the
          id, or it carries a different id) is renamed, and the group with
          the id is used (or a new one is created);
        - with no group of this name, the group carrying the id is used and
          later renamed by the update.

        Returns:
            The group to update, or None if a new group should be created

        Raises:
            TargetAPIError: If assigning the id or renaming fails
        """
        name = group['Name']
        external_id = group.get('id')

        group_obj = self.store.find_group(name)
        if not external_id:
            return group_obj
        external_id = str(external_id)

        if group_obj is None:
            logger.debug(f"No group in RT named {name}. Looking by {external_id} LDAP id.")
            other_group = self.store.find_group_by_external_id(external_id)
            if other_group is None:
                logger.debug(f"No group in RT with LDAP id {external_id}. Creating a new one.")
                return None
            logger.debug(f"No group in RT named {name}, but found group by LDAP id {external_id}. Renaming the group.")
            return other_group

        current_id = self.store.get_group_external_id(group_obj)
        if current_id is not None and str(current_id) == external_id:
            return group_obj

        other_group = self.store.find_group_by_external_id(external_id)
        if other_group is not None:
            logger.debug(f"Group with LDAP id {external_id} exists, as well as group named {name}. Renaming both.")
        elif current_id is not None:
            logger.debug(f"No group in RT with LDAP id {external_id}, but group {name} has id. "
                         f"Renaming the group and creating a new one.")
        else:
            logger.debug(f"No group in RT with LDAP id {external_id}, but group {name} exists and has no LDAP id. "
                         f"Assigning the id to the group.")
            if do_import:
                self.store.set_group_external_id(group_obj, external_id)
                logger.debug(f"Assigned {external_id} LDAP group id to {name}")
            else:
                logger.info(f"Group {name} gets LDAP id {external_id}")
            return group_obj

        self._rename_out_of_the_way(group_obj, do_import)
        return other_group

    def _rename_out_of_the_way(self, group_obj: TargetGroup, do_import: bool):
        old = group_obj.name
        new = f"{old} (LDAPImport {int(time.time())})"
        if do_import:
            try:
                self.store.rename_group(group_obj, new)
            except TargetAPIError as e:
                raise TargetAPIError(f"Couldn't rename group from {old} to {new}: {e}", status=e.status)
            logger.debug(f"Renamed group {old} to {new}")
        else:
            logger.info(f"Group {old} to be renamed to {new}")

    def _show_group_info(self, fields: Dict[str, Any], group_obj: Optional[TargetGroup] = None):
        logger.debug("\tRT Field\tRT Value -> LDAP Value")
        current = {}
        if group_obj is not None:
            current = {'Name': group_obj.name, 'Description': group_obj.description}
        for field in sorted(fields):
            old_value = current.get(field)
            if fields[field] and old_value is not None and old_value == fields[field]:
                old_value = 'unchanged'
            logger.debug(f"\t{field}\t{old_value or 'unset'} => {fields[field]}")
