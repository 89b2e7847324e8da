#!/usr/bin/env python3
"""
Unit tests for the LDAP client: connection, paged searches and member lookups.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

from ldap3.core.exceptions import LDAPSocketOpenError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_import.ldap_client import LDAPClient, LDAPEntry, LDAPConnectionError, PAGED_RESULTS_OID


def result_item(dn, **attributes):
    return {'type': 'searchResEntry', 'dn': dn, 'attributes': attributes}


class PagedServer:
    """Serves a fixed list of pages to ``connection.search`` calls."""

    def __init__(self, connection, pages, fail_on_page=None):
        self.connection = connection
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.calls = []

    def search(self, **kwargs):
        self.calls.append(kwargs)
        if kwargs.get('paged_size') == 0:
            self.connection.response = []
            self.connection.result = {'result': 0, 'description': 'success'}
            return True

        page_number = len([call for call in self.calls if call.get('paged_size') != 0])
        if page_number == self.fail_on_page:
            self.connection.response = []
            self.connection.result = {'result': 3, 'description': 'timeLimitExceeded', 'message': ''}
            return False

        entries = self.pages[page_number - 1]
        cookie = f'cookie{page_number}'.encode() if page_number < len(self.pages) else b''
        self.connection.response = [result_item(dn, uid=dn.split(',')[0][4:]) for dn in entries]
        self.connection.result = {
            'result': 0,
            'description': 'success',
            'controls': {PAGED_RESULTS_OID: {'value': {'size': 0, 'cookie': cookie}}},
        }
        return True

    @property
    def abandons(self):
        return [call for call in self.calls if call.get('paged_size') == 0]


class TestLDAPEntry(unittest.TestCase):

    def test_case_insensitive_multi_valued(self):
        entry = LDAPEntry('uid=a,dc=example,dc=com', {'mail': ['a@example.com', 'b@example.com'], 'uid': 'a'})
        self.assertEqual(entry.get('MAIL'), ['a@example.com', 'b@example.com'])
        self.assertEqual(entry.get_value('Uid'), 'a')
        self.assertIsNone(entry.get('cn'))

    def test_binary_values(self):
        entry = LDAPEntry('cn=x', {'objectGUID': [b'\xff\xfe'], 'cn': [b'caf\xc3\xa9']})
        self.assertEqual(entry.get_value('objectGUID'), 'fffe')
        self.assertEqual(entry.get_value('cn'), 'café')


class TestLDAPClient(unittest.TestCase):
    """Test cases for LDAPClient."""

    def setUp(self):
        self.config = {
            'host': 'ldap://ldap.example.com',
            'bind_dn': 'cn=import,dc=example,dc=com',
            'bind_password': 'secret',
            'base': 'ou=people,dc=example,dc=com',
            'filter': '(objectClass=inetOrgPerson)',
            'size_limit': 2,
        }

    def _client_with_connection(self, config=None):
        client = LDAPClient(config or self.config)
        client.connection = Mock()
        client._connected = True
        return client

    def test_initialization(self):
        client = LDAPClient({'host': 'ldaps://ldap.example.com'})
        self.assertTrue(client.use_ssl)
        self.assertEqual(client.user_filter, '(objectClass=person)')
        self.assertIsNone(client.size_limit)

    def test_pages_are_concatenated_in_order(self):
        client = self._client_with_connection()
        server = PagedServer(client.connection, [
            ['uid=a,dc=x', 'uid=b,dc=x'],
            ['uid=c,dc=x', 'uid=d,dc=x'],
            ['uid=e,dc=x'],
        ])
        client.connection.search.side_effect = server.search

        entries = client.run_user_search()

        self.assertEqual([entry.dn for entry in entries],
                         ['uid=a,dc=x', 'uid=b,dc=x', 'uid=c,dc=x', 'uid=d,dc=x', 'uid=e,dc=x'])
        self.assertEqual(len(server.calls), 3)
        self.assertEqual(server.abandons, [])
        self.assertIsNone(server.calls[0]['paged_cookie'])
        self.assertEqual(server.calls[1]['paged_cookie'], b'cookie1')
        self.assertEqual(server.calls[2]['paged_cookie'], b'cookie2')
        self.assertEqual(server.calls[0]['search_filter'], '(objectClass=inetOrgPerson)')

    def test_failed_page_returns_partial_results_and_abandons(self):
        client = self._client_with_connection()
        server = PagedServer(client.connection, [
            ['uid=a,dc=x', 'uid=b,dc=x'],
            ['uid=c,dc=x', 'uid=d,dc=x'],
        ], fail_on_page=2)
        client.connection.search.side_effect = server.search

        with self.assertLogs('ldap_import.ldap_client', level='ERROR'):
            entries = client.run_user_search()

        self.assertEqual([entry.dn for entry in entries], ['uid=a,dc=x', 'uid=b,dc=x'])
        self.assertEqual(len(server.abandons), 1)
        self.assertEqual(server.abandons[0]['paged_cookie'], b'cookie1')

    def test_unpaged_search(self):
        config = dict(self.config, size_limit=None)
        client = self._client_with_connection(config)
        client.connection.response = [result_item('uid=a,dc=x', uid='a'), {'type': 'searchResRef'}]
        client.connection.result = {'result': 0, 'description': 'success'}
        client.connection.search.return_value = True

        entries = client.run_user_search()

        self.assertEqual([entry.dn for entry in entries], ['uid=a,dc=x'])
        kwargs = client.connection.search.call_args.kwargs
        self.assertNotIn('paged_size', kwargs)

    def test_group_search_requires_base_and_filter(self):
        client = self._client_with_connection()
        with self.assertLogs('ldap_import.ldap_client', level='WARNING'):
            self.assertEqual(client.run_group_search(), [])
        client.connection.search.assert_not_called()

    def test_find_member_entries_by_dn(self):
        client = self._client_with_connection(dict(self.config, size_limit=None))
        client.connection.response = []
        client.connection.result = {'result': 0}
        client.connection.search.return_value = True

        client.find_member_entries('uid=a,ou=people,dc=example,dc=com')

        kwargs = client.connection.search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'uid=a,ou=people,dc=example,dc=com')
        self.assertEqual(kwargs['search_filter'], '(objectClass=inetOrgPerson)')

    def test_find_member_entries_by_attribute_escapes_value(self):
        client = self._client_with_connection(dict(self.config, size_limit=None))
        client.connection.response = []
        client.connection.result = {'result': 0}
        client.connection.search.return_value = True

        client.find_member_entries('j(doe)*', 'uid')

        kwargs = client.connection.search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'ou=people,dc=example,dc=com')
        self.assertEqual(kwargs['search_filter'], '(&(objectClass=inetOrgPerson)(uid=j\\28doe\\29\\2a))')

    @patch('ldap_import.retry.time.sleep')
    @patch('ldap_import.ldap_client.Connection')
    @patch('ldap_import.ldap_client.Server')
    def test_connect_failure_raises_connection_error(self, mock_server, mock_connection, mock_sleep):
        mock_connection.return_value.open.side_effect = LDAPSocketOpenError('unreachable')

        client = LDAPClient(self.config)
        with self.assertRaises(LDAPConnectionError):
            client.connect(max_retries=2, retry_wait=0)

        self.assertEqual(mock_connection.return_value.open.call_count, 2)

    @patch('ldap_import.ldap_client.Connection')
    @patch('ldap_import.ldap_client.Server')
    def test_connect_and_bind(self, mock_server, mock_connection):
        connection = mock_connection.return_value
        connection.open.return_value = True
        connection.bind.return_value = True

        client = LDAPClient(self.config)
        self.assertIs(client.connect(), connection)
        mock_connection.assert_called_once()
        self.assertEqual(mock_connection.call_args.kwargs['user'], 'cn=import,dc=example,dc=com')

        client.disconnect()
        connection.unbind.assert_called_once()

    @patch('ldap_import.ldap_client.Connection')
    @patch('ldap_import.ldap_client.Server')
    def test_anonymous_bind(self, mock_server, mock_connection):
        connection = mock_connection.return_value
        connection.open.return_value = True
        connection.bind.return_value = True

        client = LDAPClient(dict(self.config, bind_dn='', bind_password=''))
        client.connect()

        self.assertIsNone(mock_connection.call_args.kwargs['user'])
        self.assertIsNone(mock_connection.call_args.kwargs['password'])


if __name__ == '__main__':
    unittest.main()
