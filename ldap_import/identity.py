"""
Identity cache used to resolve group members to target usernames.
"""

import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class IdentityCache:
    """
    Maps membership keys to the target username of the user they identify.

    Keys are compared case-insensitively.  A key mapped to None is a member
    already known to be unresolvable in this run.
    """

    def __init__(self):
        self._names: Dict[str, Optional[str]] = {}

    def __contains__(self, key: str) -> bool:
        return key.lower() in self._names

    def __len__(self) -> int:
        return len(self._names)

    def get(self, key: str) -> Optional[str]:
        return self._names.get(key.lower())

    def remember(self, key: str, name: Optional[str]) -> Optional[str]:
        self._names[key.lower()] = name
        return name

    def mark_unresolvable(self, key: str):
        self._names[key.lower()] = None

    def clear(self):
        self._names.clear()


def membership_key(entry, member_attr_value: str = 'dn') -> str:
    """
    The value group entries use to refer to this user entry.

    Defaults to the DN.  When the configured attribute has no value on the
    entry the DN is used instead.
    """
    attr = member_attr_value or 'dn'
    if attr.lower() == 'dn':
        return entry.dn

    key = entry.get_value(attr)
    if key is None:
        logger.warning(f"User attribute '{attr}' has no value for '{entry.dn}'; falling back to DN")
        return entry.dn
    return key
