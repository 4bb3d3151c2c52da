import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from kommo_bridge.logging_config import get_logger

logger = get_logger("retry")

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


@dataclass(frozen=True)
class RetryPolicy:
    """Linear backoff: attempt ``n`` (0-based) waits ``base_delay * (n + 1)`` before the next try."""

    max_attempts: int = 3
    base_delay: float = 0.3
    retryable: Callable[[int], bool] = is_retryable_status

    def delay(self, attempt: int) -> float:
        return self.base_delay * (attempt + 1)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(max_attempts=settings.delivery_max_attempts, base_delay=settings.delivery_base_delay_seconds)


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    policy: RetryPolicy,
    sleep_func: SleepFunc = asyncio.sleep,
    **kwargs,
) -> httpx.Response:
    """Send a request, retrying 429/5xx and transport errors.

    Returns the last response (which may still be an error once attempts run out).
    Non-retryable statuses return immediately. Transport errors re-raise after the last attempt.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        last = attempt == attempts - 1
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.warning(
                "Transport error",
                extra={"context": {"method": method, "url": url, "attempt": attempt, "error": str(exc)}},
            )
            if last:
                raise
            await sleep_func(policy.delay(attempt))
            continue

        if response.is_success or not policy.retryable(response.status_code) or last:
            return response

        logger.warning(
            "Retryable response",
            extra={"context": {"method": method, "url": url, "attempt": attempt, "status": response.status_code}},
        )
        await sleep_func(policy.delay(attempt))

    raise RuntimeError("unreachable")


async def retry_until(
    func: Callable[[], Awaitable[Optional[T]]],
    *,
    attempts: int = 6,
    delay: float = 0.8,
    sleep_func: SleepFunc = asyncio.sleep,
) -> Optional[T]:
    """Call ``func`` until it returns something truthy; errors count as empty tries."""
    for attempt in range(attempts):
        try:
            value = await func()
            if value:
                return value
        except Exception as exc:
            logger.warning("Retry attempt failed", extra={"context": {"attempt": attempt, "error": str(exc)}})
        if attempt < attempts - 1:
            await sleep_func(delay)
    return None
