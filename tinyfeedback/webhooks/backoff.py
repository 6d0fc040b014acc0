"""Retry backoff policy."""

from datetime import timedelta

DEFAULT_BASE_DELAY_SECONDS = 5
DEFAULT_MAX_DELAY_SECONDS = 3600

# 5 * 2**32 seconds is far past any sane cap
_MAX_EXPONENT = 32


def calculate_backoff_delay(
    attempt_number: int,
    base_delay_seconds: int = DEFAULT_BASE_DELAY_SECONDS,
    max_delay_seconds: int = DEFAULT_MAX_DELAY_SECONDS,
) -> timedelta:
    """
    Delay before the next retry after `attempt_number` failed attempts.

    attempt_number is 1-indexed: 1 -> 5s, 2 -> 10s, 3 -> 20s, ... capped at
    max_delay_seconds.
    """
    if attempt_number < 1:
        raise ValueError(f"attempt_number must be >= 1, got {attempt_number}")

    exponent = min(attempt_number - 1, _MAX_EXPONENT)
    delay = base_delay_seconds * (2**exponent)
    return timedelta(seconds=min(delay, max_delay_seconds))
