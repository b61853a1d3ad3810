"""Exponential backoff for transient backend failures.

429 responses without quota exhaustion and 5xx responses are retried.
Quota exhaustion is never retried here: it needs a model switch, which
the engine's fallback path owns.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, TypeVar

from tern.classifier import get_error_status, quota_kind
from tern.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER = 0.3


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    initial_delay_ms: int = 5000
    max_delay_ms: int = 30000

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay_ms=settings.retry_initial_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )

    def should_retry(self, error: BaseException) -> bool:
        status = get_error_status(error)
        if status == 429:
            return quota_kind(error) is None
        return status is not None and 500 <= status < 600


def retry_after_ms(error: BaseException) -> int | None:
    """Delay requested by a ``Retry-After`` header (seconds or HTTP date)."""
    headers = getattr(error, "headers", None) or {}
    value = None
    for key, header in headers.items():
        if key.lower() == "retry-after":
            value = header
            break
    if not value:
        return None
    try:
        return max(0, int(float(value) * 1000))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0, int((when.timestamp() - time.time()) * 1000))


class Backoff:
    """Per-operation retry state: attempts made and the next base delay."""

    def __init__(self, policy: RetryPolicy) -> None:
        self._policy = policy
        self._delay_ms = policy.initial_delay_ms
        self.attempt = 0

    def next_delay(self, error: BaseException) -> float | None:
        """Seconds to wait before retrying ``error``, or None to give up."""
        self.attempt += 1
        if self.attempt >= self._policy.max_attempts or not self._policy.should_retry(error):
            return None
        delay_ms: float | None = None
        if get_error_status(error) == 429:
            delay_ms = retry_after_ms(error)
        if delay_ms is None:
            delay_ms = max(0.0, self._delay_ms * (1 + random.uniform(-JITTER, JITTER)))
            self._delay_ms = min(self._policy.max_delay_ms, self._delay_ms * 2)
        return delay_ms / 1000


async def retry_with_backoff(func: Callable[[], Awaitable[T]], policy: RetryPolicy) -> T:
    backoff = Backoff(policy)
    while True:
        try:
            return await func()
        except Exception as error:
            delay = backoff.next_delay(error)
            if delay is None:
                raise
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                backoff.attempt,
                policy.max_attempts,
                error,
                delay,
            )
            await asyncio.sleep(delay)
