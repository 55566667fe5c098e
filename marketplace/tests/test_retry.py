"""
Tests for bounded exponential backoff.
"""

from unittest import mock

from django.test import SimpleTestCase, override_settings

from marketplace.exceptions import StoreConflict, TransientStoreError
from marketplace.retry import backoff_delay, call_with_retry


class BackoffDelayTests(SimpleTestCase):

    def test_delay_doubles_with_jitter(self):
        with mock.patch('marketplace.retry.random.uniform', return_value=0):
            self.assertEqual(backoff_delay(0, 0.1, 10), 0.1)
            self.assertEqual(backoff_delay(1, 0.1, 10), 0.2)
            self.assertEqual(backoff_delay(3, 0.1, 10), 0.8)

    def test_delay_capped(self):
        with mock.patch('marketplace.retry.random.uniform', return_value=0):
            self.assertEqual(backoff_delay(10, 0.1, 1.0), 1.0)

    def test_jitter_bounded(self):
        delay = backoff_delay(2, 0.5, 10)
        self.assertGreaterEqual(delay, 2.0)
        self.assertLessEqual(delay, 2.2)


@override_settings(MARKETPLACE={'RETRY_ATTEMPTS': 3, 'RETRY_BASE_DELAY': 0.01, 'RETRY_MAX_DELAY': 0.1})
class CallWithRetryTests(SimpleTestCase):

    def setUp(self):
        self.sleeps = []

    def test_returns_first_success(self):
        operation = mock.Mock(side_effect=[TransientStoreError(), 'ok'])
        self.assertEqual(call_with_retry(operation, sleep=self.sleeps.append), 'ok')
        self.assertEqual(operation.call_count, 2)
        self.assertEqual(len(self.sleeps), 1)

    def test_gives_up_after_attempts(self):
        operation = mock.Mock(side_effect=TransientStoreError('down'))
        with self.assertRaises(TransientStoreError):
            call_with_retry(operation, sleep=self.sleeps.append)
        self.assertEqual(operation.call_count, 3)
        self.assertEqual(len(self.sleeps), 2)

    def test_explicit_attempts(self):
        operation = mock.Mock(side_effect=TransientStoreError('down'))
        with self.assertRaises(TransientStoreError):
            call_with_retry(operation, attempts=1, sleep=self.sleeps.append)
        self.assertEqual(operation.call_count, 1)
        self.assertEqual(self.sleeps, [])

    def test_conflicts_not_retried(self):
        operation = mock.Mock(side_effect=StoreConflict())
        with self.assertRaises(StoreConflict):
            call_with_retry(operation, sleep=self.sleeps.append)
        self.assertEqual(operation.call_count, 1)
