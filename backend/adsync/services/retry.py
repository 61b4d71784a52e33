"""Bounded exponential backoff around Meta API calls.

WHAT:
    Runs an async callable up to `max_attempts` times, waiting
    `base * 2 ** (attempt - 1)` between attempts. `base` is 5s when the failure
    was classified RATE_LIMIT, 1s otherwise.

WHY:
    Meta's throttling windows are longer than a transient 5xx, so rate-limit
    failures back off harder. Every error is retried (AUTH_ERROR included);
    wasted attempts on permanent errors are a known inefficiency, bounded by
    `max_attempts`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .meta_ads_client import ErrorCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
RATE_LIMIT_BASE_DELAY = 5.0


def _error_code(error: BaseException) -> Optional[str]:
    code = getattr(error, "code", None)
    return getattr(code, "value", code)


class RetryPolicy:
    """Retry wrapper with an injectable sleep (tests pass a recorder)."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        rate_limit_base_delay: float = RATE_LIMIT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.rate_limit_base_delay = rate_limit_base_delay
        self._sleep = sleep

    def delay_for(self, error: BaseException, attempt: int) -> float:
        """Backoff before retrying after failed attempt number `attempt` (1-based)."""
        base = self.rate_limit_base_delay if _error_code(error) == ErrorCode.RATE_LIMIT.value else self.base_delay
        return base * (2 ** (attempt - 1))

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await `fn(*args, **kwargs)`, retrying on any exception.

        Raises:
            The last error once attempts are exhausted
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except Exception as e:  # noqa: BLE001
                if attempt >= self.max_attempts:
                    logger.warning(
                        f"[RETRY] Giving up after {attempt} attempt(s): "
                        f"{_error_code(e) or type(e).__name__}: {e}"
                    )
                    raise
                delay = self.delay_for(e, attempt)
                logger.info(
                    f"[RETRY] Attempt {attempt}/{self.max_attempts} failed "
                    f"({_error_code(e) or type(e).__name__}), waiting {delay:.1f}s"
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover


async def with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """One-off convenience wrapper around RetryPolicy.run."""
    return await RetryPolicy(max_attempts=max_attempts, sleep=sleep).run(fn, *args, **kwargs)
