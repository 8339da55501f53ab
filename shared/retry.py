"""
Retry mechanism for resilient operations.

``retry_with_backoff`` runs an async operation up to ``max_attempts`` times.
After a failed attempt ``n`` it waits
``min(initial_delay * backoff_multiplier ** (n - 1), max_delay)`` plus a random
jitter in ``[0, jitter)`` seconds. A failure that ``should_retry`` rejects, or
the failure of the last attempt, is re-raised unchanged.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from shared.logging import get_logger


T = TypeVar("T")

# Substrings (matched case-insensitively) that mark a failure as transient.
RETRYABLE_MARKERS = (
    "econnrefused",
    "connection refused",
    "etimedout",
    "timeout",
    "timed out",
    "enotfound",
    "name or service not known",
    "name resolution",
    "nodename nor servname",
    "network",
)


def default_should_retry(error: BaseException, attempt: int) -> bool:
    """Retry only failures whose message names a transient network condition."""
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


def is_retryable_error(error: BaseException) -> bool:
    """Check if an error is retryable under the default predicate."""
    return default_should_retry(error, 1)


def format_retry_error(error: BaseException, attempts: int) -> str:
    """Format retry error message."""
    suffix = "s" if attempts > 1 else ""
    return f"Operation failed after {attempts} attempt{suffix}: {error}"


class RetryConfig:
    """Configuration for retry behavior. Delays are in seconds."""

    def __init__(self,
                 max_attempts: int = 3,
                 initial_delay: float = 1.0,
                 max_delay: float = 10.0,
                 backoff_multiplier: float = 2.0,
                 jitter: float = 1.0,
                 should_retry: Callable[[BaseException, int], bool] = default_should_retry):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter
        self.should_retry = should_retry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "jitter": self.jitter,
        }


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff delay after failed attempt ``attempt``, before jitter."""
    delay = config.initial_delay * (config.backoff_multiplier ** (attempt - 1))
    return min(delay, config.max_delay)


async def retry_with_backoff(operation: Callable[[], Awaitable[T]],
                             config: Optional[RetryConfig] = None,
                             *,
                             name: str = "operation",
                             sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                             on_retry: Optional[Callable[[int, BaseException], None]] = None) -> T:
    """Retry an async operation with exponential backoff."""
    if config is None:
        config = RetryConfig()

    logger = get_logger(f"retry.{name}")

    attempt = 1
    while True:
        try:
            result = await operation()
        except Exception as e:
            if attempt >= config.max_attempts or not config.should_retry(e, attempt):
                if attempt > 1:
                    logger.error(
                        "All retry attempts exhausted",
                        attempt=attempt,
                        max_attempts=config.max_attempts,
                        error=str(e)
                    )
                raise

            delay = calculate_delay(attempt, config) + random.uniform(0, config.jitter)

            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay=round(delay, 3),
                error=str(e)
            )
            if on_retry is not None:
                on_retry(attempt, e)

            await sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            logger.info("Retry succeeded", attempt=attempt)
        return result


class RetryManager:
    """Retry configurations keyed by operation name, with per-name statistics."""

    def __init__(self, configs: Optional[Dict[str, RetryConfig]] = None):
        self.configs: Dict[str, RetryConfig] = {}
        self.stats: Dict[str, Dict[str, int]] = {}
        self.logger = get_logger("retry_manager")
        for name, config in (configs or {}).items():
            self.set_config(name, config)

    @classmethod
    def from_attempts(cls, attempts: Dict[str, int], **defaults: Any) -> "RetryManager":
        """Build a manager from an ``{operation: max_attempts}`` table."""
        return cls({
            name: RetryConfig(max_attempts=max(1, int(count)), **defaults)
            for name, count in attempts.items()
        })

    def set_config(self, name: str, config: RetryConfig):
        """Set retry configuration for an operation."""
        self.configs[name] = config
        self.stats[name] = {"calls": 0, "retries": 0, "successes": 0, "failures": 0}
        self.logger.info("Set retry config", name=name, config=config.to_dict())

    def get_config(self, name: str) -> RetryConfig:
        """Operations without an entry run exactly once."""
        return self.configs.get(name) or RetryConfig(max_attempts=1)

    def _bump(self, name: str, field: str):
        stats = self.stats.setdefault(name, {"calls": 0, "retries": 0, "successes": 0, "failures": 0})
        stats[field] += 1

    async def run(self, name: str, operation: Callable[[], Awaitable[T]], *,
                  sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                  on_retry: Optional[Callable[[int, BaseException], None]] = None) -> T:
        """Run ``operation`` under the policy registered for ``name``."""
        self._bump(name, "calls")

        def _record_retry(attempt: int, error: BaseException):
            self._bump(name, "retries")
            if on_retry is not None:
                on_retry(attempt, error)

        try:
            result = await retry_with_backoff(
                operation, self.get_config(name), name=name, sleep=sleep, on_retry=_record_retry
            )
        except Exception:
            self._bump(name, "failures")
            raise
        self._bump(name, "successes")
        return result

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        """Get retry statistics."""
        return {
            name: {
                **stats,
                "success_rate": stats["successes"] / max(1, stats["calls"])
            }
            for name, stats in self.stats.items()
        }
