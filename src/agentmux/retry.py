"""Minimal async retry with explicit error contracts.

Design goals:
- Small API surface
- Explicit state (policy + attempt counters)
- Auth/permission/not-found failures fail fast, never retried
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import TYPE_CHECKING, TypeVar

import httpx

from agentmux._http import NON_RETRYABLE_STATUS_CODES, RETRYABLE_STATUS_CODES
from agentmux.errors import (
    APIError,
    AuthenticationError,
    ForbiddenError,
    InvalidRequestError,
    ModelNotFoundError,
    UnsupportedFeatureError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)

_NEVER_RETRY: tuple[type[APIError], ...] = (
    AuthenticationError,
    ForbiddenError,
    ModelNotFoundError,
    UnsupportedFeatureError,
    InvalidRequestError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy: exponential backoff plus proportional jitter."""

    max_retries: int = 3
    base_delay_s: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_s: float = 30.0
    jitter_ratio: float = 0.1

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_retries < 0:
            raise ValueError("RetryPolicy.max_retries must be >= 0")
        if self.base_delay_s < 0:
            raise ValueError("RetryPolicy.base_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("RetryPolicy.jitter_ratio must be within [0, 1]")

    @property
    def max_attempts(self) -> int:
        """Total attempts, counting the first call."""
        return self.max_retries + 1


def _retry_after_from_error(exc: BaseException) -> float | None:
    if isinstance(exc, APIError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return None


def _is_transient_network_error(exc: BaseException) -> bool:
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, asyncio.TimeoutError)):
            return True
        # RequestError is the stable base class for transport-level failures.
        if isinstance(e, (httpx.TimeoutException, httpx.RequestError)):
            return True
    return False


def should_retry_provider_error(exc: BaseException) -> bool:
    """Return True when a provider call failure should be retried.

    Contract:
    - Cancellation is never retried.
    - 401, 403 and 404 fail on the first attempt, as do validation failures.
    - APIError is retried when the adapter marks it retryable or it carries a
      known retryable HTTP status code.
    - Raw transport timeouts/connection failures are retried.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False

    if isinstance(exc, APIError):
        if isinstance(exc, _NEVER_RETRY):
            return False
        if isinstance(exc.status_code, int) and exc.status_code in NON_RETRYABLE_STATUS_CODES:
            return False
        if exc.retryable is not None:
            return exc.retryable
        return isinstance(exc.status_code, int) and exc.status_code in RETRYABLE_STATUS_CODES

    return _is_transient_network_error(exc)


def _compute_backoff_delay(policy: RetryPolicy, *, attempt: int) -> float:
    # attempt is 0-based: the sleep after the first failure uses attempt=0.
    base = policy.base_delay_s * (policy.backoff_multiplier**attempt)
    base = min(policy.max_delay_s, base)
    if base <= 0:
        return 0.0
    return base + random.random() * policy.jitter_ratio * base  # noqa: S311


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_provider_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run an async factory with bounded retries."""
    for attempt in range(policy.max_attempts):
        try:
            return await factory()
        except Exception as exc:
            if not should_retry(exc) or attempt + 1 >= policy.max_attempts:
                raise

            delay = _compute_backoff_delay(policy, attempt=attempt)
            retry_after = _retry_after_from_error(exc)
            if retry_after is not None:
                delay = max(delay, retry_after)

            logger.debug(
                "Retrying after %s (attempt %d/%d, sleeping %.2fs)",
                type(exc).__name__,
                attempt + 1,
                policy.max_attempts,
                delay,
            )
            if delay > 0:
                await sleep(delay)

    # Unreachable: the loop always returns or raises.
    raise RuntimeError("retry_async exhausted without an exception")  # pragma: no cover
