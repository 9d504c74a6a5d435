#!/usr/bin/env python3
"""
Unit tests for retry logic.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.retry import (
    retry_call, retry_settings, is_retryable_error, create_retry_callback,
    RetryableError, MaxRetriesExceeded
)
from identity_sync.adapters.base import DirectoryAPIError


class TestRetryCall(unittest.TestCase):

    @patch('identity_sync.retry.time.sleep')
    def test_succeeds_after_transient_failures(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError("reset"), RetryableError("busy"), "ok"])
        callback = Mock()

        result = retry_call(func, args=('a',), max_attempts=3, delay=1.0, backoff=2.0, on_retry=callback)

        self.assertEqual(result, "ok")
        self.assertEqual(func.call_count, 3)
        func.assert_called_with('a')
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [1.0, 2.0])
        self.assertEqual(callback.call_count, 2)

    @patch('identity_sync.retry.time.sleep')
    def test_non_retryable_raised_immediately(self, mock_sleep):
        func = Mock(side_effect=DirectoryAPIError("bad request", 400))

        with self.assertRaises(DirectoryAPIError):
            retry_call(func, max_attempts=5, delay=0)

        self.assertEqual(func.call_count, 1)
        mock_sleep.assert_not_called()

    @patch('identity_sync.retry.time.sleep')
    def test_exhausted_attempts(self, mock_sleep):
        error = DirectoryAPIError("unavailable", 503)
        func = Mock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as context:
            retry_call(func, max_attempts=3, delay=0)
        self.assertEqual(context.exception.attempts, 3)
        self.assertIs(context.exception.last_exception, error)

        func.reset_mock()
        with self.assertRaises(DirectoryAPIError):
            retry_call(func, max_attempts=2, delay=0, reraise=True)
        self.assertEqual(func.call_count, 2)

    @patch('identity_sync.retry.time.sleep')
    def test_failing_callback_does_not_stop_retry(self, mock_sleep):
        func = Mock(side_effect=[TimeoutError(), "ok"])
        callback = Mock(side_effect=RuntimeError("callback broke"))

        self.assertEqual(retry_call(func, max_attempts=2, delay=0, on_retry=callback), "ok")


class TestRetryClassification(unittest.TestCase):

    def test_status_codes(self):
        self.assertTrue(is_retryable_error(DirectoryAPIError("throttled", 429)))
        self.assertTrue(is_retryable_error(DirectoryAPIError("gateway", 502)))
        self.assertFalse(is_retryable_error(DirectoryAPIError("conflict", 409)))
        self.assertFalse(is_retryable_error(DirectoryAPIError("missing", 404)))

    def test_transport_errors(self):
        self.assertTrue(is_retryable_error(ConnectionError()))
        self.assertTrue(is_retryable_error(DirectoryAPIError("Connection error to idp: timed out")))
        self.assertFalse(is_retryable_error(ValueError("bad value")))

    def test_retry_settings(self):
        self.assertEqual(retry_settings({'max_retries': 2, 'retry_wait_seconds': 3, 'retry_backoff': 1.5}),
                         {'max_attempts': 3, 'delay': 3.0, 'backoff': 1.5})
        self.assertEqual(retry_settings({})['max_attempts'], 4)

    def test_retry_callback_logs(self):
        callback = create_retry_callback("idp user lookup")
        with self.assertLogs('identity_sync.retry', level='WARNING') as logs:
            callback(1, ConnectionError("reset"))
        self.assertIn("idp user lookup failed on attempt 1", logs.output[0])


if __name__ == '__main__':
    unittest.main()
