"""Shared provider-side error helpers.

Adapters map native SDK/HTTP failures into the ``APIError`` family so the
retry loop and callers can branch on types and status codes instead of
re-reading messages.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx

from agentmux._http import NON_RETRYABLE_STATUS_CODES, RETRYABLE_STATUS_CODES
from agentmux.errors import (
    APIError,
    AuthenticationError,
    ForbiddenError,
    ModelNotFoundError,
    ProviderConnectionError,
    RateLimitError,
    RequestTimeoutError,
    _walk_exception_chain,
)

_STATUS_ERROR_CLASSES: dict[int, type[APIError]] = {
    401: AuthenticationError,
    403: ForbiddenError,
    404: ModelNotFoundError,
    429: RateLimitError,
}

# Message fragments checked in order when no status code is available.
_MESSAGE_RULES: tuple[tuple[tuple[str, ...], int], ...] = (
    (("401", "unauthorized"), 401),
    (("429", "rate limit"), 429),
    (("404", "not found"), 404),
    (("403", "forbidden"), 403),
)

_API_KEY_ENV_VARS = {
    "gemini": "GEMINI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
}


def classify_message(message: str) -> tuple[str, int]:
    """Derive a normalized ``(code, status)`` pair from an error message."""
    lowered = message.lower()
    for needles, status in _MESSAGE_RULES:
        if any(n in lowered for n in needles):
            return _STATUS_ERROR_CLASSES[status].code, status
    return APIError.code, 500


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def _extract_retry_info_seconds(exc: BaseException) -> float | None:
    """Extract retry delay from Google API-style RetryInfo in error details.

    google-genai ``ClientError`` exposes the parsed JSON body via ``.details``::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}
    """
    details: Any = getattr(exc, "details", None)
    if not isinstance(details, dict):
        return None
    error: Any = details.get("error")
    if not isinstance(error, dict):
        return None
    detail_list: Any = error.get("details")
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def parse_retry_after(raw: Any) -> float | None:
    """Parse a ``Retry-After`` header value given in seconds."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after_s", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if headers is not None:
            seconds = parse_retry_after(headers.get("Retry-After"))
            if seconds is not None:
                return seconds

        retry_info = _extract_retry_info_seconds(e)
        if retry_info is not None:
            return retry_info
    return None


def _auth_hint(provider: str, status_code: int | None, cause_message: str) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    cause_lower = cause_message.lower()
    if status_code in {401, 403} or (
        status_code == 400 and ("api key" in cause_lower or "api_key" in cause_lower)
    ):
        env_var = _API_KEY_ENV_VARS.get(provider, "the provider API key")
        return f"Check credentials/permissions (try setting {env_var} or ProviderConfig.api_key)."
    return None


def error_for_status(
    status_code: int,
    message: str,
    *,
    provider: str,
    phase: str,
    model: str | None = None,
    retry_after_s: float | None = None,
    hint: str | None = None,
) -> APIError:
    """Build the typed error for an HTTP status returned by a provider."""
    err_cls = _STATUS_ERROR_CLASSES.get(status_code, APIError)
    retryable = status_code in RETRYABLE_STATUS_CODES or retry_after_s is not None
    if status_code in NON_RETRYABLE_STATUS_CODES:
        retryable = False
    kwargs: dict[str, Any] = {
        "hint": hint if hint is not None else _auth_hint(provider, status_code, message),
        "retryable": retryable,
        "status_code": status_code,
        "retry_after_s": retry_after_s,
        "provider": provider,
        "phase": phase,
    }
    if err_cls is ModelNotFoundError:
        return ModelNotFoundError(message, model=model, **kwargs)
    return err_cls(message, **kwargs)


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    allow_network_errors: bool = True,
    message: str | None = None,
    model: str | None = None,
    hint: str | None = None,
) -> APIError:
    """Map native SDK/HTTP exceptions into the APIError family."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc

    msg = message or f"{provider} {phase} failed"
    cause = str(exc)

    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, TimeoutError)):
            return RequestTimeoutError(
                f"{msg}: request timed out",
                hint=hint,
                retryable=allow_network_errors,
                provider=provider,
                phase=phase,
            )
        if isinstance(e, httpx.RequestError):
            return ProviderConnectionError(
                f"{msg}: {e}" if str(e) else msg,
                hint=hint or "Check that the provider endpoint is reachable.",
                retryable=allow_network_errors,
                provider=provider,
                phase=phase,
            )

    status_code = extract_status_code(exc)
    retry_after_s = extract_retry_after_s(exc)
    if status_code is None:
        _, derived_status = classify_message(cause)
        # Substring classification is only trusted for the well-known client errors.
        if derived_status != 500:
            status_code = derived_status

    if status_code is None:
        return APIError(
            f"{msg}: {cause}" if cause else msg,
            hint=hint,
            status_code=500,
            retry_after_s=retry_after_s,
            provider=provider,
            phase=phase,
        )

    status_note = f" (status={status_code})"
    return error_for_status(
        status_code,
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        provider=provider,
        phase=phase,
        model=model,
        retry_after_s=retry_after_s,
        hint=hint,
    )
