"""
Bounded exponential backoff for transient store failures.
"""

import logging
import random
import time

from django.conf import settings

from .exceptions import TransientStoreError

logger = logging.getLogger(__name__)


DEFAULTS = {
    'RETRY_ATTEMPTS': 3,
    'RETRY_BASE_DELAY': 0.05,
    'RETRY_MAX_DELAY': 1.0,
    'SLOT_RETRY_LIMIT': 5,
}


def marketplace_setting(name):
    """Read a key of the MARKETPLACE settings dict, falling back to defaults."""
    return getattr(settings, 'MARKETPLACE', {}).get(name, DEFAULTS[name])


def backoff_delay(retry_count, base_delay, max_delay):
    """
    Calculate exponential backoff delay with jitter.

    Args:
        retry_count: Number of retries already made (0 for the first)
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound before jitter, in seconds

    Returns:
        float: Delay in seconds
    """
    delay = min(base_delay * (2 ** retry_count), max_delay)
    # Jitter keeps concurrent retries from hitting the store in lockstep
    return delay + random.uniform(0, delay * 0.1)


def call_with_retry(operation, description='store call', attempts=None, sleep=time.sleep):
    """
    Run ``operation`` and retry it on TransientStoreError.

    Only transient errors are retried; validation errors and conflicts
    propagate immediately.

    Args:
        operation: Zero-argument callable
        description: Label used in log messages
        attempts: Total attempts (defaults to MARKETPLACE['RETRY_ATTEMPTS'])
        sleep: Sleep function, injectable for tests

    Raises:
        TransientStoreError: After the last attempt fails
    """
    if attempts is None:
        attempts = marketplace_setting('RETRY_ATTEMPTS')
    attempts = max(1, attempts)
    base_delay = marketplace_setting('RETRY_BASE_DELAY')
    max_delay = marketplace_setting('RETRY_MAX_DELAY')

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransientStoreError as exc:
            if attempt >= attempts:
                logger.error(
                    f"{description} failed permanently after {attempts} attempts: {exc}"
                )
                raise
            delay = backoff_delay(attempt - 1, base_delay, max_delay)
            logger.warning(
                f"{description} failed, retrying in {delay:.3f}s "
                f"(attempt {attempt}/{attempts}): {exc}"
            )
            sleep(delay)
