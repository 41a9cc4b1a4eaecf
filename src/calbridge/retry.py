"""Bounded retry with exponential backoff and jitter.

Only ``ProviderUnavailable``-class failures (5xx, timeouts, transport errors)
are retried.  Auth, validation, not-found and rate-limit failures fail fast:
rate limits are surfaced to the caller with their retry-after hint.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from calbridge.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy configuration."""

    max_attempts: int = 2
    """Maximum number of attempts (including the initial attempt)."""

    base_delay_seconds: float = 0.5
    """Base delay in seconds for exponential backoff."""

    max_delay_seconds: float = 8.0
    """Maximum delay in seconds between retries."""

    jitter_factor: float = 0.2
    """Jitter factor (0.0 to 1.0) for randomizing backoff delay."""

    def calculate_backoff(self, attempt_number: int) -> float:
        """Backoff before *attempt_number* (1-indexed, so 2 = first retry).

        Uses ``base_delay * 2 ** (attempt_number - 2)`` capped at
        ``max_delay_seconds``, with symmetric jitter.
        """
        if attempt_number <= 1:
            return 0.0

        delay = min(
            self.base_delay_seconds * (2 ** (attempt_number - 2)),
            self.max_delay_seconds,
        )
        jitter_range = delay * self.jitter_factor
        return max(0.0, delay - jitter_range + random.random() * 2 * jitter_range)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> RetryPolicy:
        return cls(
            max_attempts=int(config.get("max_attempts", 2)),
            base_delay_seconds=float(config.get("base_delay_seconds", 0.5)),
            max_delay_seconds=float(config.get("max_delay_seconds", 8.0)),
            jitter_factor=float(config.get("jitter_factor", 0.2)),
        )


NO_RETRY = RetryPolicy(max_attempts=1)


async def retry_unavailable(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    operation_name: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *operation*, retrying ``ProviderUnavailable`` per *policy*.

    The last ``ProviderUnavailable`` is re-raised once attempts are exhausted;
    every other exception propagates immediately.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except ProviderUnavailable as exc:
            if attempt >= policy.max_attempts:
                raise
            attempt += 1
            delay = policy.calculate_backoff(attempt)
            logger.warning(
                "%s failed with a transient provider error; retrying in %.2fs (attempt %d/%d): %s",
                operation_name,
                delay,
                attempt,
                policy.max_attempts,
                exc.message,
            )
            await sleep(delay)
