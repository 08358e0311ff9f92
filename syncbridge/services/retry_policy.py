"""
Backoff schedule for failed jobs.

Adapters make exactly one attempt per call; all retry timing lives here and
in SyncQueueRepository.fail().
"""
import random
from datetime import timedelta

from syncbridge.errors import ErrorKind

DEFAULT_BASE_DELAY_SECONDS = 60
DEFAULT_MAX_JITTER_SECONDS = 60


def compute_backoff(attempts, base_delay=DEFAULT_BASE_DELAY_SECONDS, max_jitter=DEFAULT_MAX_JITTER_SECONDS, rng=None):
    """
    Seconds to wait before the next attempt.

    Args:
        attempts: Attempts made so far, including the one that just failed
        base_delay: Base delay in seconds
        max_jitter: Upper bound of the random jitter added on top

    Returns:
        float: 2**attempts * base_delay + uniform(0, max_jitter)
    """
    rng = rng or random
    jitter = rng.uniform(0, max_jitter) if max_jitter > 0 else 0.0
    return (2 ** attempts) * base_delay + jitter


def next_retry_at(now, attempts, base_delay=DEFAULT_BASE_DELAY_SECONDS, max_jitter=DEFAULT_MAX_JITTER_SECONDS, rng=None):
    return now + timedelta(seconds=compute_backoff(attempts, base_delay, max_jitter, rng=rng))


def should_retry(kind, attempts, max_attempts):
    """Only transient failures with budget left go back to pending."""
    return ErrorKind(kind) == ErrorKind.TRANSIENT and attempts < max_attempts
