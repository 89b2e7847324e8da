"""
LDAP Import - Import users and groups from an LDAP directory into RT.

This package maps directory entries onto target user and group records,
creates or updates them, and keeps group memberships in sync with the
directory.
"""

__version__ = "1.0.0"
__author__ = "LDAP Import Team"
