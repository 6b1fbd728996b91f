"""Tests for rate-limit retry with exponential backoff."""

import pytest

from src.clients.exceptions import ApiError, RateLimitError
from src.utils.retry_manager import RateLimitRetry, RetryConfig, parse_retry_after, retry_on_rate_limit

pytestmark = pytest.mark.unit


class FixedJitter:
    def __init__(self, value: float) -> None:
        self.value = value
        self.calls: list[tuple[float, float]] = []

    def uniform(self, a: float, b: float) -> float:
        self.calls.append((a, b))
        return self.value


class Flaky:
    """Raise the queued errors, then return ``result``."""

    def __init__(self, errors: list[Exception], result: str = "ok") -> None:
        self.errors = errors
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.mark.parametrize(
    ("value", "expected"),
    [("3", 3), (" 10 ", 10), ("0", None), ("-1", None), ("1.5", None), ("Wed, 21 Oct 2015 07:28:00 GMT", None), (None, None)],
)
def test_parse_retry_after(value: str | None, expected: int | None) -> None:
    assert parse_retry_after(value) == expected


def test_delay_prefers_retry_after() -> None:
    retry = RateLimitRetry(RetryConfig(base_delay=2.0), rng=FixedJitter(0.5))
    assert retry.calculate_delay(3, retry_after=7) == 7.0


def test_delay_is_exponential_with_jitter() -> None:
    jitter = FixedJitter(0.25)
    retry = RateLimitRetry(RetryConfig(base_delay=1.0), rng=jitter)
    assert retry.calculate_delay(1) == 1.25
    assert retry.calculate_delay(2) == 2.25
    assert retry.calculate_delay(4) == 8.25
    assert jitter.calls[0] == (0, 0.5)


def test_retries_rate_limit_then_succeeds() -> None:
    sleeps: list[float] = []
    retry = RateLimitRetry(RetryConfig(max_retries=3, base_delay=1.0), sleep=sleeps.append, rng=FixedJitter(0.0))
    func = Flaky([RateLimitError("429"), RateLimitError("429", retry_after=5)])

    assert retry.execute_with_retry(func) == "ok"
    assert func.calls == 3
    assert sleeps == [1.0, 5.0]


def test_exhausted_budget_propagates_last_error() -> None:
    sleeps: list[float] = []
    retry = RateLimitRetry(RetryConfig(max_retries=2, base_delay=1.0), sleep=sleeps.append, rng=FixedJitter(0.0))
    func = Flaky([RateLimitError("first"), RateLimitError("second"), RateLimitError("third")])

    with pytest.raises(RateLimitError, match="third"):
        retry.execute_with_retry(func)
    assert func.calls == 3
    assert sleeps == [1.0, 2.0]


def test_other_errors_are_not_retried() -> None:
    sleeps: list[float] = []
    retry = RateLimitRetry(sleep=sleeps.append)
    func = Flaky([ApiError("boom", status_code=500)])

    with pytest.raises(ApiError, match="boom"):
        retry.execute_with_retry(func)
    assert func.calls == 1
    assert sleeps == []


def test_decorator_wraps_function() -> None:
    func = Flaky([RateLimitError("429")], result="done")

    @retry_on_rate_limit(max_retries=1, base_delay=0.01)
    def call() -> str:
        return func()

    assert call() == "done"
    assert func.calls == 2
