"""
Attribute mapping between LDAP entries and target records.

A mapping is a dictionary from target field name to one of:

- an LDAP attribute name (the first value of the attribute is used),
- a list of attribute names (first values joined with a single space),
- a callable computing the value from the entry.

Fields are resolved in lexical order of their names, so a callable sees the
results of every field sorted before it.  Field names prefixed with ``CF.``
populate options of a Select custom field and names prefixed with ``UserCF.``
set a custom field value on the user; both are kept out of the primary record.
"""

import re
import logging
from typing import Any, Callable, Dict, List, Optional, Pattern

logger = logging.getLogger(__name__)

MEMBER_ATTR = 'Member_Attr'
MEMBER_ATTR_VALUE = 'Member_Attr_Value'
DEFAULT_GROUP_DESCRIPTION = 'Imported from LDAP'

CUSTOM_FIELD_KEYS = re.compile(r'^(?:User)?CF\.', re.IGNORECASE)
CUSTOM_FIELD_OPTION_KEY = re.compile(r'^CF\.(.+)$', re.IGNORECASE)
USER_CUSTOM_FIELD_KEY = re.compile(r'^UserCF\.(.+)$', re.IGNORECASE)
MEMBER_ATTR_VALUE_KEY = re.compile(r'^Member_Attr_Value$', re.IGNORECASE)


class MappingError(Exception):
    """Raised when a mapping is missing or one of its values is malformed."""
    pass


class MappingRule:
    """Base class for a parsed mapping value."""

    def collect(self, entry, call_args: Dict[str, Any]) -> List[List[Any]]:
        """
        Resolve the rule against an entry.

        Returns:
            One list of values per defined contribution.  Undefined attributes
            and ``None`` results contribute nothing.
        """
        raise NotImplementedError


class Literal(MappingRule):
    """A single LDAP attribute."""

    def __init__(self, attribute: str):
        self.attribute = attribute

    def collect(self, entry, call_args):
        values = entry.get(self.attribute)
        if values is None:
            return []
        return [list(values)]

    def __repr__(self):
        return f"Literal({self.attribute!r})"


class Computed(MappingRule):
    """A callable receiving the entry and the mapping state."""

    def __init__(self, func: Callable):
        self.func = func

    def collect(self, entry, call_args):
        value = self.func(entry=entry, **call_args)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [[item] for item in value if item is not None]
        return [[value]]

    def __repr__(self):
        return f"Computed({getattr(self.func, '__name__', self.func)!r})"


class Concat(MappingRule):
    """Several attributes (or callables) whose values are concatenated."""

    def __init__(self, parts: List[MappingRule]):
        self.parts = parts

    def collect(self, entry, call_args):
        contributions = []
        for part in self.parts:
            contributions.extend(part.collect(entry, call_args))
        return contributions

    def __repr__(self):
        return f"Concat({self.parts!r})"


def parse_rule(value: Any) -> MappingRule:
    """
    Parse a raw mapping value into a MappingRule.

    Raises:
        MappingError: If the value is empty or of an unsupported type
    """
    if isinstance(value, (list, tuple)):
        parts = [item for item in value if item is not None and item != '']
        if not parts:
            raise MappingError("no defined fields")
        return Concat([_parse_part(part) for part in parts])
    if value is None or value == '':
        raise MappingError("no defined fields")
    return _parse_part(value)


def _parse_part(value: Any) -> MappingRule:
    if callable(value):
        return Computed(value)
    if isinstance(value, str):
        return Literal(value)
    raise MappingError(f"invalid type of LDAP mapping, value is {value!r}")


class FieldKey:
    """A target field name with its custom field prefix parsed out."""

    PLAIN = 'plain'
    CUSTOM_FIELD_OPTION = 'custom_field_option'
    USER_CUSTOM_FIELD = 'user_custom_field'

    def __init__(self, raw: str, kind: str, name: str):
        self.raw = raw
        self.kind = kind
        self.name = name

    @classmethod
    def parse(cls, raw: str) -> 'FieldKey':
        match = CUSTOM_FIELD_OPTION_KEY.match(raw)
        if match:
            return cls(raw, cls.CUSTOM_FIELD_OPTION, match.group(1))
        match = USER_CUSTOM_FIELD_KEY.match(raw)
        if match:
            return cls(raw, cls.USER_CUSTOM_FIELD, match.group(1))
        return cls(raw, cls.PLAIN, raw)

    def __repr__(self):
        return f"FieldKey({self.raw!r}, {self.kind})"


def check_mapping(mapping: Optional[Dict[str, Any]]):
    """
    Ensure a mapping has at least one field.

    Raises:
        MappingError: If the mapping is absent or empty
    """
    if not mapping:
        raise MappingError("No mapping found, can't import")


def flatten(contributions: List[List[Any]]) -> str:
    """Join the first value of every contribution with a single space."""
    values = [_to_text(values[0]) for values in contributions if values]
    return ' '.join(value for value in values if value is not None and value != '')


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


class AttributeMapper:
    """
    Resolves one mapping against LDAP entries.

    The mapping is parsed once; fields with malformed values are reported when
    the mapper is created and left out of every record.
    """

    def __init__(self, mapping: Optional[Dict[str, Any]]):
        self.mapping = mapping or {}
        self.rules: Dict[str, MappingRule] = {}
        self.fields: Dict[str, FieldKey] = {}

        for field in sorted(self.mapping):
            self.fields[field] = FieldKey.parse(field)
            try:
                self.rules[field] = parse_rule(self.mapping[field])
            except MappingError as e:
                logger.error(f"Invalid LDAP mapping for {field}: {e}")

    def parse(self, entry, skip: Optional[Pattern] = None, only: Optional[Pattern] = None,
              do_import: bool = False, keep_all: tuple = ()) -> Dict[str, Any]:
        """
        Build a record for an entry.

        Args:
            entry: LDAP entry to map
            skip: Fields matching this pattern are left out
            only: When given, only fields matching this pattern are mapped
            do_import: Passed to computed fields; False means dry run
            keep_all: Fields that keep every value as a list instead of
                being flattened into a string

        Returns:
            Field name to value.  Fields with no defined value are absent.
        """
        record: Dict[str, Any] = {}

        for field in sorted(self.rules):
            if skip is not None and skip.search(field):
                continue
            if only is not None and not only.search(field):
                continue

            call_args = {
                'mapping': self.mapping,
                'field': field,
                'result': record,
                'do_import': do_import,
            }
            try:
                contributions = self.rules[field].collect(entry, call_args)
            except Exception as e:
                logger.error(f"Mapping for {field} failed on {getattr(entry, 'dn', entry)}: {e}")
                continue

            if not contributions:
                continue

            if field in keep_all:
                record[field] = [
                    _to_text(value) for values in contributions
                    for value in values if value is not None
                ]
            else:
                record[field] = flatten(contributions)

        return record

    def build_user_object(self, entry, do_import: bool = False) -> Dict[str, str]:
        """Map a user entry without its custom field keys; Name falls back to EmailAddress."""
        user = self.parse(entry, skip=CUSTOM_FIELD_KEYS, do_import=do_import)
        if not user.get('Name') and user.get('EmailAddress'):
            user['Name'] = user['EmailAddress']
        return user

    def build_custom_field_options(self, entry, do_import: bool = False) -> Dict[str, str]:
        """Values of ``CF.<name>`` fields, keyed by custom field name."""
        return self._custom_field_values(entry, FieldKey.CUSTOM_FIELD_OPTION,
                                         CUSTOM_FIELD_OPTION_KEY, do_import)

    def build_user_custom_fields(self, entry, do_import: bool = False) -> Dict[str, str]:
        """Values of ``UserCF.<name>`` fields, keyed by custom field name."""
        return self._custom_field_values(entry, FieldKey.USER_CUSTOM_FIELD,
                                         USER_CUSTOM_FIELD_KEY, do_import)

    def custom_field_names(self, kind: str) -> List[str]:
        """Custom field names of the given kind, in mapping order."""
        return [key.name for field, key in self.fields.items()
                if key.kind == kind and field in self.rules]

    def _custom_field_values(self, entry, kind: str, only: Pattern, do_import: bool) -> Dict[str, str]:
        record = self.parse(entry, only=only, do_import=do_import)
        return {self.fields[field].name: value for field, value in record.items()
                if field in self.fields and self.fields[field].kind == kind}

    def build_group_object(self, entry, do_import: bool = False) -> Dict[str, Any]:
        """
        Map a group entry.

        ``Member_Attr`` keeps every member identifier as a list, and
        ``Description`` defaults to "Imported from LDAP".
        """
        group = self.parse(entry, skip=MEMBER_ATTR_VALUE_KEY, do_import=do_import,
                           keep_all=(MEMBER_ATTR,))
        if not group.get('Description'):
            group['Description'] = DEFAULT_GROUP_DESCRIPTION
        return group
