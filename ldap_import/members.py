"""
Group membership synchronization.
"""

import logging
from typing import List, Optional, Tuple

from ldap_import.context import ImportContext
from ldap_import.targets.base import TargetAPIError, TargetGroup

logger = logging.getLogger(__name__)


class MembershipSynchronizer:
    """
    Converges a target group's direct user members onto the LDAP member list.

    Members are resolved to usernames through the run's identity cache; a
    member missing from the cache is looked up in the directory once and the
    answer (including "no such user") is cached.
    """

    def __init__(self, context: ImportContext):
        self.context = context
        self.store = context.store

    def sync(self, group: Optional[TargetGroup], group_name: str, members: Optional[List[str]],
             created: bool = False, do_import: bool = False) -> Tuple[int, int]:
        """
        Add missing members and remove members no longer in LDAP.

        Args:
            group: Target group, or None in a dry run for a group not created yet
            group_name: Name used in log messages
            members: Raw member values from the LDAP group entry
            created: True if the group was created in this run (it has no members yet)
            do_import: False for a dry run

        Returns:
            Tuple of (members added, members removed)

        Raises:
            TargetAPIError: If the current members cannot be listed
        """
        logger.debug(f"Processing group membership for {group_name}")

        if members is None:
            logger.warning(f"No members found for {group_name} in Member_Attr")
            return 0, 0

        current = {}
        if group is not None and not created:
            current = dict(self.store.list_direct_user_members(group))
        elif not do_import:
            logger.debug("No group in RT, would create with members:")

        added = 0
        for member in members:
            username = self.resolve_member(member, group_name)
            if username is None:
                continue

            if username in current:
                del current[username]
                logger.debug(f"\t{username}\tin RT and LDAP")
                continue

            logger.debug(f"\t{username}\tin LDAP, adding to RT" if group is not None else f"\t{username}")
            if not do_import:
                continue

            user = self.store.find_user(username)
            if user is None:
                logger.warning(f"Unable to load {username}")
                continue
            try:
                self.store.add_group_member(group, user)
                added += 1
            except TargetAPIError as e:
                logger.warning(f"Failed to add {username} to {group_name}: {e}")

        removed = 0
        for username in sorted(current):
            logger.debug(f"\t{username}\tin RT, not in LDAP, removing")
            if not do_import:
                continue
            try:
                self.store.remove_group_member(group, current[username])
                removed += 1
            except TargetAPIError as e:
                logger.warning(f"Failed to remove {username} from {group_name}: {e}")

        return added, removed

    def resolve_member(self, member: str, group_name: str) -> Optional[str]:
        """
        Username of the user a member value refers to, or None.

        Cache misses are looked up in the directory with the configured
        membership attribute and the user filter.
        """
        cache = self.context.users
        if member in cache:
            return cache.get(member)

        entries = self.context.ldap_client.find_member_entries(member, self.context.member_attr_value)
        if not entries:
            cache.mark_unresolvable(member)
            logger.error(f"No user found for {member} who should be a member of {group_name}")
            return None

        username = self.context.cache_user(entries[0])
        if username is None:
            logger.error(f"User {entries[0].dn} has no Name, can't add to {group_name}")
        return username
