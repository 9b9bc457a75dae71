"""Retry policy contract: bounded attempts, fail-fast client errors."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from agentmux.errors import (
    APIError,
    AuthenticationError,
    ForbiddenError,
    ModelNotFoundError,
    RateLimitError,
    UnsupportedFeatureError,
)
from agentmux.retry import (
    RetryPolicy,
    _compute_backoff_delay,
    retry_async,
    should_retry_provider_error,
)

pytestmark = pytest.mark.unit


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _Flaky:
    def __init__(self, *outcomes: object) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        item = self.outcomes.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


# =============================================================================
# Policy
# =============================================================================


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_retries": -1},
        {"base_delay_s": -0.1},
        {"backoff_multiplier": 0},
        {"max_delay_s": -1},
        {"jitter_ratio": 1.5},
    ],
)
def test_retry_policy_rejects_invalid_values(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_backoff_grows_exponentially_and_caps() -> None:
    policy = RetryPolicy(base_delay_s=1.0, backoff_multiplier=2.0, max_delay_s=5.0, jitter_ratio=0)

    delays = [_compute_backoff_delay(policy, attempt=a) for a in range(5)]

    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_jitter_stays_within_ratio() -> None:
    policy = RetryPolicy(base_delay_s=2.0, jitter_ratio=0.1)
    for _ in range(50):
        assert 2.0 <= _compute_backoff_delay(policy, attempt=0) <= 2.2


# =============================================================================
# Classification
# =============================================================================


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (APIError("server", status_code=500), True),
        (APIError("bad gateway", status_code=502), True),
        (RateLimitError("slow", status_code=429, retryable=True), True),
        (APIError("marked", retryable=False, status_code=503), False),
        (AuthenticationError("nope", status_code=401, retryable=True), False),
        (ForbiddenError("nope", status_code=403), False),
        (ModelNotFoundError("gone", status_code=404), False),
        (UnsupportedFeatureError("no tools"), False),
        (APIError("bad request", status_code=400), False),
        (httpx.ConnectError("refused"), True),
        (TimeoutError(), True),
        (ValueError("bug"), False),
        (asyncio.CancelledError(), False),
    ],
)
def test_should_retry_provider_error(exc: BaseException, expected: bool) -> None:
    assert should_retry_provider_error(exc) is expected


# =============================================================================
# Loop
# =============================================================================


@pytest.mark.asyncio
async def test_transient_failure_then_success_returns_success() -> None:
    sleeps = _Sleeps()
    call = _Flaky(APIError("server", status_code=500), "ok")

    policy = RetryPolicy(max_retries=3, jitter_ratio=0)
    result = await retry_async(call, policy=policy, sleep=sleeps)

    assert result == "ok"
    assert call.calls == 2
    assert sleeps.delays == [1.0]


@pytest.mark.asyncio
async def test_unauthorized_fails_on_first_attempt() -> None:
    sleeps = _Sleeps()
    call = _Flaky(AuthenticationError("bad key", status_code=401), "never")

    with pytest.raises(AuthenticationError):
        await retry_async(call, policy=RetryPolicy(max_retries=3), sleep=sleeps)

    assert call.calls == 1
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_attempts_are_bounded_by_max_retries() -> None:
    call = _Flaky(*[APIError("down", status_code=503) for _ in range(5)])

    with pytest.raises(APIError):
        await retry_async(call, policy=RetryPolicy(max_retries=2), sleep=_Sleeps())

    assert call.calls == 3


@pytest.mark.asyncio
async def test_retry_after_hint_raises_the_delay() -> None:
    sleeps = _Sleeps()
    call = _Flaky(RateLimitError("slow", status_code=429, retry_after_s=7.0), "ok")

    await retry_async(call, policy=RetryPolicy(jitter_ratio=0), sleep=sleeps)

    assert sleeps.delays == [7.0]
