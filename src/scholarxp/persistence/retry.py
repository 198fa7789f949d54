"""Bounded exponential-backoff retry for transient storage failures.

Only StorageError with transient=True is retried. Everything else
propagates on the first attempt; the attempt count is always finite.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from scholarxp.errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    jitter: bool = True


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before the retry following attempt (1-based)."""
    delay = config.base_delay * (2 ** (attempt - 1))
    if config.jitter:
        # Jitter between 0.5x and 1.5x of the exponential base
        delay = delay * (0.5 + random.random())
    return min(delay, config.max_delay)


def call_with_retry(
    func: Callable[[], T],
    config: RetryConfig,
    label: str = "",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Call func, retrying transient StorageErrors with exponential backoff.

    Raises the last StorageError once max_attempts is exhausted.
    """
    sleep = sleep or time.sleep
    name = label or getattr(func, "__name__", "storage call")
    attempts = max(1, config.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except StorageError as e:
            if not e.transient:
                raise
            if attempt >= attempts:
                logger.warning("Max retries (%d) exceeded for %s: %s", attempts, name, e)
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(
                "Retry %d/%d for %s in %.2fs: %s", attempt, attempts, name, delay, e,
            )
            sleep(delay)

    raise AssertionError("unreachable")
