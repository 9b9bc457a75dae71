"""Exception hierarchy for agentmux."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class AgentmuxError(Exception):
    """Base exception for all agentmux errors."""

    code: str = "AGENTMUX_ERROR"

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(AgentmuxError):
    """Configuration validation or resolution failed."""

    code = "INVALID_CONFIG"


class InternalError(AgentmuxError):
    """An agentmux internal error (bug) or invariant violation."""

    code = "INTERNAL_ERROR"


# =============================================================================
# Provider errors
# =============================================================================


class APIError(AgentmuxError):
    """Provider call failed.

    Adapters attach retry metadata so the retry loop can stay bounded and
    deterministic without re-inspecting messages.
    """

    code = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        code: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        if code is not None:
            self.code = code
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class AuthenticationError(APIError):
    """Credentials were missing or rejected (HTTP 401)."""

    code = "AUTHENTICATION_ERROR"


class ForbiddenError(APIError):
    """Credentials lack permission for the operation (HTTP 403)."""

    code = "FORBIDDEN_ERROR"


class ModelNotFoundError(APIError):
    """The requested model does not exist or is not served (HTTP 404)."""

    code = "NOT_FOUND_ERROR"

    def __init__(self, message: str, *, model: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.model = model


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""

    code = "RATE_LIMIT_ERROR"


class ProviderConnectionError(APIError):
    """Network or DNS failure reaching the provider."""

    code = "CONNECTION_ERROR"


class RequestTimeoutError(APIError):
    """A request exceeded its deadline."""

    code = "TIMEOUT"


class UnsupportedFeatureError(APIError):
    """Streaming, tools or images requested but not offered by the provider."""

    code = "UNSUPPORTED_FEATURE"


class InvalidRequestError(APIError):
    """The request is malformed for the target provider."""

    code = "INVALID_REQUEST"


class ContextLengthExceededError(InvalidRequestError):
    """Estimated prompt size exceeds the provider's context window."""

    code = "CONTEXT_LENGTH_EXCEEDED"


class UnknownProviderError(AgentmuxError):
    """A provider id outside the supported set was requested."""

    code = "INVALID_PROVIDER"


# =============================================================================
# Session errors
# =============================================================================


class ChatSessionError(AgentmuxError):
    """Failure scoped to a single chat session."""

    code = "SESSION_ERROR"

    def __init__(
        self,
        message: str,
        session_id: str,
        provider: str,
        code: str | None = None,
        *,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.session_id = session_id
        self.provider = provider
        if code is not None:
            self.code = code


class ChatSessionTimeoutError(ChatSessionError):
    """A session request exceeded its deadline."""

    code = "TIMEOUT"


class ChatSessionRateLimitError(ChatSessionError):
    """The provider rate-limited a session request."""

    code = "RATE_LIMIT_ERROR"

    def __init__(
        self,
        message: str,
        session_id: str,
        provider: str,
        retry_after_s: float | None = None,
        *,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, session_id, provider, hint=hint)
        self.retry_after_s = retry_after_s


class JsonParseError(ChatSessionError):
    """Structured output could not be parsed as JSON."""

    code = "JSON_PARSE_ERROR"


# =============================================================================
# Manager errors
# =============================================================================


class AgentNotFoundError(AgentmuxError):
    """No agent is registered under the given id."""

    code = "AGENT_NOT_FOUND"

    def __init__(self, agent_id: str, *, hint: str | None = None) -> None:
        super().__init__(f"Agent {agent_id} not found", hint=hint)
        self.agent_id = agent_id


class DuplicateAgentError(AgentmuxError):
    """An agent with the same id is already registered."""

    code = "DUPLICATE_AGENT"

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent with ID {agent_id} already exists")
        self.agent_id = agent_id


class SessionNotFoundError(AgentmuxError):
    """No live session is registered under the given id."""

    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class ConcurrencyLimitError(AgentmuxError):
    """A global or per-agent session cap was reached."""

    code = "CONCURRENCY_LIMIT"

    def __init__(
        self, message: str, *, limit: int, agent_id: str | None = None
    ) -> None:
        super().__init__(message, hint="End an existing session before starting another.")
        self.limit = limit
        self.agent_id = agent_id


class InvalidAgentConfigError(ConfigurationError):
    """Agent configuration failed validation."""

    code = "INVALID_AGENT_CONFIG"

    def __init__(self, problems: list[str], *, agent_id: str | None = None) -> None:
        super().__init__(f"Invalid agent configuration: {', '.join(problems)}")
        self.problems = list(problems)
        self.agent_id = agent_id


class ProviderUnavailableError(AgentmuxError):
    """An adapter failed its configuration or connectivity pre-flight check."""

    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, message: str, *, agent_id: str, check: str) -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.check = check


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
