"""Exponential-backoff retry policy for embedding and classification calls."""

from __future__ import annotations

import asyncio
import logging
import time
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from backlog_cleaner.config import settings
from backlog_cleaner.errors import ProviderError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given as delta-seconds or an HTTP date.

    Returns None when the header is absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class _RetryAfterOrExponential:
    """Tenacity wait strategy: the provider's Retry-After hint, else exponential."""

    def __init__(self, initial_delay: float, max_delay: float):
        self._exponential = wait_exponential(multiplier=initial_delay, max=max_delay)

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, ProviderError) and exc.retry_after is not None:
            return exc.retry_after
        return self._exponential(retry_state)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Provider call failed, retrying",
        extra={
            "attempt": retry_state.attempt_number,
            "delay_seconds": delay,
            "status_code": getattr(exc, "status_code", None),
            "error": str(exc),
        },
    )


class RetryPolicy:
    """Retries transient provider failures (HTTP 429 and 5xx) with backoff.

    Delays start at ``initial_delay`` seconds and double up to ``max_delay``.
    Any other failure propagates on the first attempt. When every attempt
    fails, RetryExhaustedError is raised with the last failure attached.
    """

    def __init__(
        self,
        attempts: int = 0,
        initial_delay: float = 0.0,
        max_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.attempts = attempts or settings.retry_attempts
        self.initial_delay = initial_delay or settings.retry_initial_delay
        self.max_delay = max_delay or settings.retry_max_delay
        self._sleep = sleep or asyncio.sleep

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=_RetryAfterOrExponential(self.initial_delay, self.max_delay),
            retry=retry_if_exception(is_retryable),
            before_sleep=_log_retry,
            sleep=self._sleep,
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await func(*args, **kwargs)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise RetryExhaustedError(
                f"Gave up after {self.attempts} attempts: {last}",
                last_error=last,
            ) from last
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover
