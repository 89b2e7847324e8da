"""
User import: create or update target users from LDAP user entries.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from ldap_import.context import ImportContext, ReconciliationResult, is_numeric_name
from ldap_import.mapping import FieldKey
from ldap_import.targets.base import TargetAPIError, TargetUser

logger = logging.getLogger(__name__)


class UserReconciler:
    """
    Decides whether each LDAP user is created, updated or skipped.

    After the user itself is handled, the user is added to the default group
    and the custom field mappings are applied.  Each of those steps fails on
    its own: an error is logged and the next step runs.
    """

    def __init__(self, context: ImportContext):
        self.context = context
        self.store = context.store
        self.mapper = context.user_mapper

    def reconcile(self, entry, do_import: bool = False) -> str:
        """
        Import one LDAP user entry.

        Args:
            entry: LDAP user entry
            do_import: False for a dry run, which only logs what would change

        Returns:
            A ReconciliationResult value
        """
        user = self.mapper.build_user_object(entry, do_import=do_import)
        name = user.get('Name')

        if not name:
            logger.warning(f"No Name or EmailAddress for user {entry.dn}, skipping: {user}")
            return ReconciliationResult.SKIPPED_NO_NAME
        if is_numeric_name(name):
            logger.debug(f"Skipping user '{name}', as it is numeric")
            return ReconciliationResult.SKIPPED_NUMERIC_NAME

        logger.debug(f"Processing user {name}")
        self.context.cache_user(entry, name)

        try:
            user_obj, result = self.create_or_update(user, do_import)
        except TargetAPIError as e:
            logger.error(f"Couldn't create or update user {name}: {e}")
            return ReconciliationResult.ERROR

        if user_obj is None:
            return result

        self.add_user_to_group(user_obj, do_import)
        self.add_custom_field_options(entry, do_import)
        self.update_custom_field_values(entry, user_obj, do_import)
        return result

    def create_or_update(self, user: Dict[str, str], do_import: bool) -> Tuple[Optional[TargetUser], str]:
        """
        Create the user or update an existing one.

        Returns:
            The target user (None when nothing exists or was created) and the result

        Raises:
            TargetAPIError: If the store fails to create or update the user
        """
        name = user['Name']
        user_obj = self._load_user(user)

        if user_obj is not None:
            message = f"User {name} already exists as {user_obj.id}"
            if not (self.context.update_users or self.context.update_only):
                logger.debug(f"{message}, skipping")
                return user_obj, ReconciliationResult.SKIPPED_EXISTING

            logger.debug(f"{message}, updating their data")
            if do_import:
                changes = self.store.update_user(user_obj, self._update_fields(user))
                logger.debug('\n'.join(str(change) for change in changes) or 'no change')
            else:
                logger.info(f"Found existing user {name} to update")
                self._show_user_info(user, user_obj)
            return user_obj, ReconciliationResult.UPDATED

        if self.context.update_only:
            logger.debug(f"User {name} doesn't exist in RT, skipping")
            return None, ReconciliationResult.SKIPPED_NO_CREATE

        if not do_import:
            logger.info(f"Found new user {name} to create in RT")
            self._show_user_info(user)
            return None, ReconciliationResult.CREATED

        fields = dict(user)
        fields['Privileged'] = 1 if self.context.create_privileged else 0
        user_obj = self.store.create_user(fields)
        logger.debug(f"Created user for {name} with id {user_obj.id}")
        return user_obj, ReconciliationResult.CREATED

    def _load_user(self, user: Dict[str, str]) -> Optional[TargetUser]:
        user_obj = self.store.find_user(user['Name'])
        if user_obj is None and user.get('EmailAddress'):
            user_obj = self.store.find_user_by_email(user['EmailAddress'])
        return user_obj

    def _update_fields(self, user: Dict[str, str]) -> Dict[str, str]:
        if self.context.clobber_empty:
            return dict(user)
        return {field: value for field, value in user.items() if value != ''}

    def _show_user_info(self, user: Dict[str, Any], user_obj: Optional[TargetUser] = None):
        logger.debug("\tRT Field\tRT Value -> LDAP Value")
        for field in sorted(user):
            old_value = None
            if user_obj is not None:
                old_value = user_obj.fields.get(field)
                if user[field] and old_value is not None and old_value == user[field]:
                    old_value = 'unchanged'
            logger.debug(f"\t{field}\t{old_value or 'unset'} => {user[field]}")

    def add_user_to_group(self, user_obj: TargetUser, do_import: bool):
        """Add the user to the default import group unless that is disabled."""
        if self.context.skip_autogenerated_group:
            return

        group_name = self.context.group_name
        try:
            group = self.context.default_group(do_import)
            if group is None:
                logger.debug(f"Would add {user_obj.name} to {group_name}")
                return

            if self.context.in_default_group(group, user_obj):
                logger.debug(f"{user_obj.name} already a member of {group.name}")
                return

            if not do_import:
                logger.debug(f"Would add {user_obj.name} to {group.name}")
                return

            self.store.add_group_member(group, user_obj)
            self.context.joined_default_group(user_obj)
            logger.debug(f"Added {user_obj.name} to {group.name}")
        except TargetAPIError as e:
            logger.error(f"Couldn't add {user_obj.name} to {group_name} [{e}]")

    def add_custom_field_options(self, entry, do_import: bool):
        """Add the values of ``CF.<name>`` fields as options of those Select custom fields."""
        options = self.mapper.build_custom_field_options(entry, do_import=do_import)

        for cf_name, value in options.items():
            if not value:
                continue
            try:
                custom_field = self.store.load_custom_field(cf_name)
                if custom_field is None:
                    logger.error(f"Couldn't load CF [{cf_name}]")
                    continue

                if self.store.custom_field_has_option(custom_field, value):
                    logger.debug(f"Custom Field '{cf_name}' already has '{value}' for a value")
                    continue

                if not do_import:
                    logger.debug(f"Would add '{value}' to Custom Field '{cf_name}'")
                    continue

                self.store.add_custom_field_option(custom_field, value)
                logger.debug(f"Added '{value}' to Custom Field '{cf_name}'")
            except TargetAPIError as e:
                logger.error(f"Couldn't add '{value}' to '{cf_name}' [{e}]")

    def update_custom_field_values(self, entry, user_obj: TargetUser, do_import: bool):
        """
        Copy ``UserCF.<name>`` fields onto the user's custom fields.

        Values are only ever added: a single-value custom field has its old
        value replaced, a multi-value custom field keeps its stale values.  A
        value gone from LDAP is written as an empty value, clearing a
        single-value field.
        """
        values = self.mapper.build_user_custom_fields(entry, do_import=do_import)

        for cf_name in self.mapper.custom_field_names(FieldKey.USER_CUSTOM_FIELD):
            value = values.get(cf_name) or None
            try:
                current = self.store.get_custom_field_value(user_obj, cf_name) or None

                if current is None and value is None:
                    logger.debug(f"{user_obj.name}: Skipping '{cf_name}'.  No value in RT or LDAP.")
                    continue
                if current == value:
                    logger.debug(f"{user_obj.name}: Value '{value}' is already set for '{cf_name}'")
                    continue

                logger.debug(f"{user_obj.name}: Adding object value '{value or ''}' for '{cf_name}'")
                if not do_import:
                    continue

                self.store.add_custom_field_value(user_obj, cf_name, value or '')
            except TargetAPIError as e:
                logger.error(f"{user_obj.name}: Couldn't add value '{value or ''}' for '{cf_name}': {e}")
