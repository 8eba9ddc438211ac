from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from edutenant.core.config import get_settings
from edutenant.core.errors import ConnectivityError
from edutenant.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (ConnectivityError, TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    timeout_s: float
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_s=settings.admin_statement_timeout_s,
        max_attempts=settings.admin_connect_max_attempts,
        backoff_ms=settings.admin_connect_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "operation",
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_s)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("db_retries_total")
            logger.warning(
                "transient_failure_retrying operation=%s attempt=%s error=%s",
                operation,
                attempt,
                exc,
            )
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1
