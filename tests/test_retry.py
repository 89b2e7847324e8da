#!/usr/bin/env python3
"""
Unit tests for the retry helper.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch, call

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_import.retry import retry_call, create_retry_callback, MaxRetriesExceeded


class TestRetryCall(unittest.TestCase):

    @patch('ldap_import.retry.time.sleep')
    def test_succeeds_after_failures(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError('down'), ConnectionError('down'), 'bound'])

        result = retry_call(func, max_attempts=3, delay=2, backoff=2, exceptions=(ConnectionError,))

        self.assertEqual(result, 'bound')
        self.assertEqual(func.call_count, 3)
        self.assertEqual(mock_sleep.call_args_list, [call(2), call(4)])

    @patch('ldap_import.retry.time.sleep')
    def test_gives_up(self, mock_sleep):
        func = Mock(side_effect=ConnectionError('down'))
        on_retry = Mock()

        with self.assertRaises(MaxRetriesExceeded) as ctx:
            retry_call(func, max_attempts=2, delay=0, exceptions=(ConnectionError,), on_retry=on_retry)

        self.assertEqual(ctx.exception.attempts, 2)
        self.assertIsInstance(ctx.exception.last_exception, ConnectionError)
        on_retry.assert_called_once()

    def test_other_exceptions_propagate(self):
        func = Mock(side_effect=ValueError('bad'))

        with self.assertRaises(ValueError):
            retry_call(func, max_attempts=3, exceptions=(ConnectionError,))
        self.assertEqual(func.call_count, 1)

    def test_retry_callback_logs_warning(self):
        callback = create_retry_callback('LDAP bind')
        with self.assertLogs('ldap_import.retry', level='WARNING') as logs:
            callback(1, ConnectionError('down'))
        self.assertIn('LDAP bind failed on attempt 1', logs.output[0])


if __name__ == '__main__':
    unittest.main()
