"""Retry with exponential backoff for rate-limited (HTTP 429) requests.

Only rate-limit responses are transient. Every other failure is permanent
and propagates on the first occurrence; the caller records it instead.
"""

import functools
import time
from collections.abc import Callable
from dataclasses import dataclass
from secrets import SystemRandom
from typing import Any, ParamSpec, Protocol, TypeVar

from src.clients.exceptions import RateLimitError
from src.display import configure_logging

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)

P = ParamSpec("P")
R = TypeVar("R")


class UniformSource(Protocol):
    def uniform(self, a: float, b: float) -> float: ...


@dataclass
class RetryConfig:
    """Configuration for rate-limit retry behavior."""

    max_retries: int = 5
    base_delay: float = 1.0


def parse_retry_after(value: Any) -> int | None:
    """Return Retry-After seconds when the header is a positive integer."""
    if value is None:
        return None
    text = str(value).strip()
    if not text.isdigit():
        return None
    seconds = int(text)
    return seconds if seconds > 0 else None


class RateLimitRetry:
    """Re-run a callable while it raises :class:`RateLimitError`.

    Delay for attempt ``n`` (1-based) is the server's ``Retry-After`` when
    usable, otherwise ``base * 2**(n-1) + uniform(0, base/2)``. Once
    ``max_retries`` retries are spent, the last error propagates.
    """

    def __init__(
        self,
        config_param: RetryConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: UniformSource | None = None,
    ) -> None:
        self.config = config_param or RetryConfig()
        self._sleep = sleep
        # Non-crypto jitter generator that satisfies linting rules
        self._rng = rng or SystemRandom()

    def calculate_delay(self, attempt: int, retry_after: int | None = None) -> float:
        """Calculate delay in seconds before retry number ``attempt``."""
        if retry_after is not None and retry_after > 0:
            return float(retry_after)
        base = self.config.base_delay
        return base * (2 ** max(0, attempt - 1)) + self._rng.uniform(0, base / 2)

    def execute_with_retry(
        self,
        func: Callable[..., R],
        *args: Any,
        context: str = "request",
        **kwargs: Any,
    ) -> R:
        """Execute a function, sleeping and retrying on HTTP 429 only."""
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except RateLimitError as e:
                attempt += 1
                if attempt > self.config.max_retries:
                    logger.error(
                        "Rate limit (429) for %s persisted after %d retries; giving up",
                        context,
                        self.config.max_retries,
                    )
                    raise

                delay = self.calculate_delay(attempt, e.retry_after)
                logger.warning(
                    "Rate limit (429) for %s. Retrying in %.1fs (attempt %d/%d)",
                    context,
                    delay,
                    attempt,
                    self.config.max_retries,
                )
                self._sleep(delay)


def retry_on_rate_limit(
    max_retries: int = 5,
    base_delay: float = 1.0,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Add rate-limit retry logic to a function.

    Args:
        max_retries: Retries after the first attempt
        base_delay: Base delay between retries in seconds

    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            manager = RateLimitRetry(RetryConfig(max_retries=max_retries, base_delay=base_delay))
            return manager.execute_with_retry(func, *args, context=func.__name__, **kwargs)

        return wrapper

    return decorator
