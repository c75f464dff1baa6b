"""Exponential backoff shared by providers, the engine and the image orchestrator."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ..models import BackoffConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """delay(n) = min(base * factor**n, cap) + uniform(0, jitter), n counted from 0."""

    base_s: float = 0.2
    factor: float = 1.6
    cap_s: float = 5.0
    jitter_s: float = 0.0
    max_attempts: int = 3

    @classmethod
    def from_config(cls, config: BackoffConfig, max_attempts: int = 3) -> "BackoffPolicy":
        return cls(
            base_s=config.base_s,
            factor=config.factor,
            cap_s=config.cap_s,
            jitter_s=config.jitter_s,
            max_attempts=max_attempts,
        )

    def delay(self, attempt: int) -> float:
        return compute_backoff_delay(attempt, self.base_s, self.factor, self.cap_s, self.jitter_s)


def compute_backoff_delay(
    attempt: int,
    base_s: float = 0.2,
    factor: float = 1.6,
    cap_s: float = 5.0,
    jitter_s: float = 0.0,
) -> float:
    """Delay in seconds before retry number ``attempt`` (0-based)."""
    attempt = max(0, attempt)
    delay = min(base_s * (factor ** attempt), cap_s)
    if jitter_s > 0:
        delay += random.uniform(0, jitter_s)
    return delay


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: BackoffPolicy,
    is_transient: Callable[[BaseException], bool],
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """Run ``operation(attempt)`` until it succeeds or a fatal error occurs.

    Args:
        operation: Coroutine factory, receives the 0-based attempt number
        policy: Delay schedule and attempt limit
        is_transient: Classifier; False means raise immediately
        on_retry: Optional hook called before each sleep

    Returns:
        The operation's result

    Raises:
        The last error once attempts are exhausted, or the first fatal error
    """
    attempt = 0
    while True:
        try:
            return await operation(attempt)
        except Exception as e:
            if not is_transient(e) or attempt + 1 >= policy.max_attempts:
                raise
            wait = policy.delay(attempt)
            logger.debug(
                "Transient failure attempt=%d/%d wait=%.2fs reason=%s",
                attempt + 1, policy.max_attempts, wait, e,
            )
            if on_retry is not None:
                on_retry(attempt, e, wait)
            await asyncio.sleep(wait)
            attempt += 1
