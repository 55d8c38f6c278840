from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from icsbridge.errors import AuthExpiredError, ConfigurationError
from icsbridge.models import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    policy: RetryPolicy,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Await ``func`` under ``policy``; auth and configuration failures are never retried.

    Waits grow linearly (``wait_seconds``, ``2 * wait_seconds``, ...) unless
    ``backoff_multiplier`` is above 1, in which case attempt ``n`` waits
    ``wait_seconds * backoff_multiplier ** (n - 1)``.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_wait_strategy(policy),
        retry=retry_if_not_exception_type((AuthExpiredError, ConfigurationError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await func(*args, **kwargs)
    raise RuntimeError("retry loop exited without a result")  # pragma: no cover


def _wait_strategy(policy: RetryPolicy) -> Any:
    if policy.backoff_multiplier <= 1.0:
        return wait_incrementing(start=policy.wait_seconds, increment=policy.wait_seconds)

    def _exponential(retry_state: Any) -> float:
        attempt = max(1, int(retry_state.attempt_number))
        return policy.wait_seconds * (policy.backoff_multiplier ** (attempt - 1))

    return _exponential
