from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ProviderUnavailableError
from tenantshift.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, ProviderUnavailableError)

Sleeper = Callable[[float], Awaitable[None]]


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


def retry_everything(exc: Exception) -> bool:
    _ = exc
    return True


@dataclass(frozen=True)
class RetryPolicy:
    # Named policy attached to each step that touches an external provider.
    name: str
    max_attempts: int
    backoff_ms: int
    timeout_ms: int | None = None
    jitter: bool = True

    def delay_s(self, attempt: int) -> float:
        # Exponential curve: backoff, 2x, 4x ... between consecutive attempts.
        base = (self.backoff_ms / 1000.0) * (2 ** (attempt - 1))
        if not self.jitter:
            return base
        return base * random.uniform(0.5, 1.5)


def provisioning_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        name="provision",
        max_attempts=settings.provision_max_attempts,
        backoff_ms=settings.provision_backoff_ms,
        timeout_ms=settings.provision_timeout_ms,
    )


def rollback_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        name="rollback",
        max_attempts=settings.rollback_max_attempts,
        backoff_ms=settings.rollback_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Sleeper | None = None,
) -> Any:
    # Retry helper with jittered exponential backoff and a hard attempt ceiling.
    retryable = retryable or _default_retryable
    sleep = sleep or asyncio.sleep
    attempt = 1
    while True:
        try:
            if policy.timeout_ms:
                return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller translates the final failure
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter(f"retries_total.{policy.name}")
            logger.warning(
                "retrying_after_failure policy=%s attempt=%s max_attempts=%s error=%s",
                policy.name,
                attempt,
                policy.max_attempts,
                type(exc).__name__,
            )
            await sleep(policy.delay_s(attempt))
            attempt += 1
