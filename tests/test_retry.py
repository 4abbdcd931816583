#!/usr/bin/env python3
"""
Unit tests for retry utilities.
"""

import unittest
from unittest.mock import Mock, patch, call
import sys
import os

# Add parent directory to path to import roster_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from roster_sync.retry import (
    retry_call,
    is_retryable_error,
    create_retry_callback,
    MaxRetriesExceeded,
)
from roster_sync.directory.base import DirectoryAPIError


@patch('roster_sync.retry.time.sleep')
class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    def test_success_first_attempt(self, mock_sleep):
        func = Mock(return_value='ok')

        self.assertEqual(retry_call(func, args=(1,), kwargs={'b': 2}), 'ok')
        func.assert_called_once_with(1, b=2)
        mock_sleep.assert_not_called()

    def test_success_after_failures(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError('reset'), ConnectionError('reset'), 'ok'])

        self.assertEqual(retry_call(func, max_attempts=3, delay=0.5, backoff=2.0), 'ok')
        self.assertEqual(mock_sleep.call_args_list, [call(0.5), call(1.0)])

    def test_max_retries_exceeded(self, mock_sleep):
        error = ConnectionError('refused')
        func = Mock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as ctx:
            retry_call(func, max_attempts=2, delay=0)

        self.assertEqual(ctx.exception.attempts, 2)
        self.assertIs(ctx.exception.last_exception, error)
        self.assertEqual(func.call_count, 2)
        # No sleep after the final attempt
        self.assertEqual(mock_sleep.call_count, 1)

    def test_uncaught_exception_type(self, mock_sleep):
        func = Mock(side_effect=KeyError('x'))

        with self.assertRaises(KeyError):
            retry_call(func, exceptions=(ConnectionError,))
        func.assert_called_once()

    def test_retry_if_rejects(self, mock_sleep):
        func = Mock(side_effect=DirectoryAPIError('HTTP 400: Bad Request', status_code=400))

        with self.assertRaises(DirectoryAPIError):
            retry_call(func, exceptions=(DirectoryAPIError,), retry_if=is_retryable_error)

        func.assert_called_once()
        mock_sleep.assert_not_called()

    def test_on_retry_callback(self, mock_sleep):
        error = TimeoutError('timed out')
        func = Mock(side_effect=[error, 'ok'])
        on_retry = Mock()

        retry_call(func, on_retry=on_retry)

        on_retry.assert_called_once_with(1, error)

    def test_failing_callback_does_not_stop_retries(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError('reset'), 'ok'])
        on_retry = Mock(side_effect=RuntimeError('callback broke'))

        self.assertEqual(retry_call(func, on_retry=on_retry), 'ok')


class TestIsRetryableError(unittest.TestCase):
    """Test cases for transient error detection."""

    def test_network_errors(self):
        self.assertTrue(is_retryable_error(ConnectionError('reset')))
        self.assertTrue(is_retryable_error(TimeoutError()))

    def test_transient_status_codes(self):
        for status in (429, 500, 502, 503, 504, 599):
            self.assertTrue(is_retryable_error(DirectoryAPIError('x', status_code=status)), status)

    def test_client_status_codes(self):
        for status in (400, 401, 404, 405):
            self.assertFalse(is_retryable_error(DirectoryAPIError('request timed out', status_code=status)), status)

    def test_message_patterns(self):
        self.assertTrue(is_retryable_error(DirectoryAPIError('Connection error to Mailchimp: refused')))
        self.assertTrue(is_retryable_error(Exception('The read operation timed out')))
        self.assertFalse(is_retryable_error(ValueError('bad value')))


class TestRetryCallback(unittest.TestCase):
    """Test cases for create_retry_callback."""

    def test_logs_warning(self):
        callback = create_retry_callback('Mailchimp GET /lists')

        with self.assertLogs('roster_sync.retry', level='WARNING') as logs:
            callback(2, ConnectionError('reset'))

        self.assertIn('Mailchimp GET /lists failed on attempt 2', logs.output[0])


if __name__ == '__main__':
    unittest.main()
