"""Retry logic with exponential backoff for transient failures.

This module provides the retry policy applied at every request site of the
transfer engine (single-shot requests and individual multipart parts), with
error classification to distinguish between transient failures (worth
retrying) and permanent failures (retry won't help).

Transient (Retryable):
- Connection timeouts
- Connection errors
- Server errors (5xx)
- Rate limiting (429)

Permanent (Not Retryable):
- Client errors (4xx except 429)
- Signature mismatches (403)
- Authentication failures (401)
- Integrity and configuration errors
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from oss_uploader.errors import TransferError

logger = logging.getLogger(__name__)


def is_retryable_error(error: Exception) -> bool:
    """Determine if an error is transient and worth retrying.

    Args:
        error: The exception that was raised.

    Returns:
        True if the error is transient and should trigger a retry,
        False if the error is permanent and retrying won't help.
    """
    if isinstance(error, TransferError):
        return bool(error.retryable)

    # Raw httpx errors only reach here from callers bypassing the transport
    if isinstance(error, (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout)):
        return True

    # All other errors are not retryable by default
    return False


@dataclass
class RetryPolicy:
    """Retry policy with capped exponential backoff and jitter.

    Attempt n (1-based) that fails with a retryable error is followed by a
    delay of base_delay * 2 ** (n - 1), capped at max_delay, scaled by a
    random factor in [1 - jitter, 1 + jitter].

    Args:
        max_attempts: Maximum number of attempts (including first try).
        base_delay: Delay in seconds after the first failure.
        max_delay: Upper bound for any single delay.
        jitter: Relative random spread applied to each delay.
        sleep: Function used to wait; replaced in tests.
    """

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.2
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def delay_for(self, attempt: int) -> float:
        """Return the delay to wait after the given failed attempt."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return max(delay, 0.0)

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute a function, retrying transient failures with backoff.

        Returns:
            The return value of func if successful.

        Raises:
            Exception: The last error, once attempts are exhausted or as
                soon as a non-retryable error occurs. TransferErrors carry
                the number of attempts made in their ``attempts`` attribute.
        """
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if isinstance(e, TransferError):
                    e.attempts = attempt

                if not is_retryable_error(e) or attempt >= self.max_attempts:
                    raise

                delay = self.delay_for(attempt)
                logger.debug(
                    "Attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt, self.max_attempts, e, delay,
                )
                self.sleep(delay)
                attempt += 1
