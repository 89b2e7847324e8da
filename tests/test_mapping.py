#!/usr/bin/env python3
"""
Unit tests for attribute mapping.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_import.mapping import (
    AttributeMapper, FieldKey, MappingError, Literal, Concat, Computed,
    parse_rule, check_mapping, flatten, DEFAULT_GROUP_DESCRIPTION,
)
from tests.fakes import make_entry


class TestParseRule(unittest.TestCase):
    """Test cases for mapping value parsing."""

    def test_attribute_name(self):
        rule = parse_rule('mail')
        self.assertIsInstance(rule, Literal)
        self.assertEqual(rule.attribute, 'mail')

    def test_list_of_attributes(self):
        rule = parse_rule(['givenName', 'sn'])
        self.assertIsInstance(rule, Concat)
        self.assertEqual(len(rule.parts), 2)

    def test_callable(self):
        self.assertIsInstance(parse_rule(lambda **kw: 'x'), Computed)

    def test_empty_values_rejected(self):
        for value in ('', None, [], ['']):
            with self.assertRaises(MappingError):
                parse_rule(value)

    def test_unsupported_type_rejected(self):
        with self.assertRaises(MappingError):
            parse_rule(42)


class TestFieldKey(unittest.TestCase):
    """Test cases for custom field prefix parsing."""

    def test_prefixes(self):
        self.assertEqual(FieldKey.parse('Name').kind, FieldKey.PLAIN)

        option = FieldKey.parse('cf.Department')
        self.assertEqual(option.kind, FieldKey.CUSTOM_FIELD_OPTION)
        self.assertEqual(option.name, 'Department')

        user_cf = FieldKey.parse('UserCF.Employee Number')
        self.assertEqual(user_cf.kind, FieldKey.USER_CUSTOM_FIELD)
        self.assertEqual(user_cf.name, 'Employee Number')


class TestAttributeMapper(unittest.TestCase):
    """Test cases for AttributeMapper."""

    def setUp(self):
        self.entry = make_entry(
            'uid=jdoe,ou=people,dc=example,dc=com',
            uid='jdoe', mail='jdoe@example.com', givenName='John', sn='Doe',
            departmentNumber=['42', '43'], employeeNumber='1001', title='',
        )

    def test_scalar_and_concatenated_fields(self):
        mapper = AttributeMapper({'Name': 'uid', 'RealName': ['givenName', 'sn'], 'EmailAddress': 'mail'})
        record = mapper.build_user_object(self.entry)
        self.assertEqual(record, {'Name': 'jdoe', 'RealName': 'John Doe', 'EmailAddress': 'jdoe@example.com'})

    def test_mapping_is_deterministic(self):
        mapper = AttributeMapper({'Name': 'uid', 'RealName': ['givenName', 'sn']})
        self.assertEqual(mapper.build_user_object(self.entry), mapper.build_user_object(self.entry))

    def test_attribute_names_are_case_insensitive(self):
        mapper = AttributeMapper({'Name': 'UID'})
        self.assertEqual(mapper.build_user_object(self.entry)['Name'], 'jdoe')

    def test_first_value_of_multivalued_attribute(self):
        mapper = AttributeMapper({'Organization': 'departmentNumber'})
        self.assertEqual(mapper.parse(self.entry)['Organization'], '42')

    def test_undefined_attribute_leaves_field_absent(self):
        mapper = AttributeMapper({'Name': 'uid', 'Phone': 'telephoneNumber'})
        self.assertNotIn('Phone', mapper.parse(self.entry))

    def test_empty_attribute_gives_empty_field(self):
        mapper = AttributeMapper({'Title': 'title'})
        self.assertEqual(mapper.parse(self.entry), {'Title': ''})

    def test_concatenation_drops_undefined_parts(self):
        mapper = AttributeMapper({'RealName': ['givenName', 'middleName', 'sn']})
        self.assertEqual(mapper.parse(self.entry)['RealName'], 'John Doe')

    def test_name_falls_back_to_email(self):
        mapper = AttributeMapper({'Name': 'cn', 'EmailAddress': 'mail'})
        self.assertEqual(mapper.build_user_object(self.entry)['Name'], 'jdoe@example.com')

    def test_computed_field_sees_sorted_prior_fields(self):
        seen = {}

        def comment(entry, mapping, field, result, do_import):
            seen.update(result)
            seen['do_import'] = do_import
            return f"{result['EmailAddress']} ({entry.dn})"

        mapper = AttributeMapper({'EmailAddress': 'mail', 'Name': 'uid', 'Comments': comment})
        record = mapper.parse(self.entry, do_import=True)

        # Comments sorts first, so nothing is resolved yet when it runs
        self.assertNotIn('Comments', record)
        self.assertEqual(seen, {'do_import': True})

        mapper = AttributeMapper({'EmailAddress': 'mail', 'Signature': comment})
        record = mapper.parse(self.entry)
        self.assertEqual(record['Signature'], f"jdoe@example.com ({self.entry.dn})")

    def test_computed_field_returning_list_or_none(self):
        mapper = AttributeMapper({
            'Address1': lambda **kw: ['1 Main St', None, 'Suite 2'],
            'Address2': lambda **kw: None,
        })
        record = mapper.parse(self.entry)
        self.assertEqual(record['Address1'], '1 Main St Suite 2')
        self.assertNotIn('Address2', record)

    def test_failing_computed_field_is_skipped(self):
        def broken(**kwargs):
            raise ValueError("boom")

        mapper = AttributeMapper({'Name': 'uid', 'NickName': broken})
        with self.assertLogs('ldap_import.mapping', level='ERROR'):
            record = mapper.parse(self.entry)
        self.assertEqual(record, {'Name': 'jdoe'})

    def test_invalid_field_value_is_logged_and_skipped(self):
        with self.assertLogs('ldap_import.mapping', level='ERROR') as logs:
            mapper = AttributeMapper({'Name': 'uid', 'Broken': []})
        self.assertIn('Invalid LDAP mapping for Broken', logs.output[0])
        self.assertEqual(mapper.parse(self.entry), {'Name': 'jdoe'})

    def test_custom_field_keys_kept_out_of_user_record(self):
        mapper = AttributeMapper({
            'Name': 'uid',
            'CF.Department': 'departmentNumber',
            'UserCF.Employee Number': 'employeeNumber',
        })
        self.assertEqual(mapper.build_user_object(self.entry), {'Name': 'jdoe'})
        self.assertEqual(mapper.build_custom_field_options(self.entry), {'Department': '42'})
        self.assertEqual(mapper.build_user_custom_fields(self.entry), {'Employee Number': '1001'})
        self.assertEqual(mapper.custom_field_names(FieldKey.USER_CUSTOM_FIELD), ['Employee Number'])

    def test_group_object(self):
        group_entry = make_entry(
            'cn=eng,ou=groups,dc=example,dc=com',
            cn='Eng', member=['uid=a,dc=example,dc=com', 'uid=b,dc=example,dc=com'],
        )
        mapper = AttributeMapper({'Name': 'cn', 'Member_Attr': 'member', 'Member_Attr_Value': 'dn'})
        group = mapper.build_group_object(group_entry)

        self.assertEqual(group['Name'], 'Eng')
        self.assertEqual(group['Member_Attr'], ['uid=a,dc=example,dc=com', 'uid=b,dc=example,dc=com'])
        self.assertEqual(group['Description'], DEFAULT_GROUP_DESCRIPTION)
        self.assertNotIn('Member_Attr_Value', group)


class TestHelpers(unittest.TestCase):

    def test_check_mapping(self):
        with self.assertRaises(MappingError):
            check_mapping({})
        with self.assertRaises(MappingError):
            check_mapping(None)
        check_mapping({'Name': 'uid'})

    def test_flatten(self):
        self.assertEqual(flatten([['a', 'x'], [''], [None], ['b']]), 'a b')
        self.assertEqual(flatten([['']]), '')


if __name__ == '__main__':
    unittest.main()
