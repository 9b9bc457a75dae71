"""Provider-agnostic chat session and the shared session factory.

A ``ChatSession`` owns its conversation history exclusively: every accessor
returns a deep copy and every mutator copies its input, so callers can never
alias (and corrupt) the list the session sends to the provider.
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
import copy
from dataclasses import dataclass, field, replace
import json
import logging
import random
import re
import string
import time
from typing import TYPE_CHECKING, Any, ClassVar, NoReturn

from pydantic import BaseModel, ValidationError

from agentmux.cancel import iterate_cancellable, run_cancellable
from agentmux.config import (
    PROVIDER_MODELS,
    apply_environment_variables,
    coerce_provider,
    default_provider_config,
)
from agentmux.errors import (
    APIError,
    ChatSessionError,
    ChatSessionRateLimitError,
    ChatSessionTimeoutError,
    ConfigurationError,
    InvalidRequestError,
    JsonParseError,
    RateLimitError,
    RequestTimeoutError,
    UnsupportedFeatureError,
)
from agentmux.provider_factory import ProviderFactory
from agentmux.providers.models import Content, Part, UnifiedRequest, user_content

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Iterable

    from agentmux.cancel import CancelToken
    from agentmux.config import ProviderConfig
    from agentmux.providers.base import ProviderClient
    from agentmux.providers.models import (
        AIProvider,
        Tool,
        UnifiedResponse,
        UsageMetadata,
    )

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 120.0

JSON_INSTRUCTION = (
    "You must respond with valid JSON that matches this schema: {schema}. "
    "Only return the JSON, no other text."
)

ResponseSchemaInput = type[BaseModel] | dict[str, Any]

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

_PASSTHROUGH_ERRORS = (
    ChatSessionError,
    ConfigurationError,
    UnsupportedFeatureError,
    InvalidRequestError,
)


@dataclass(frozen=True)
class GenerationConfig:
    """Per-call overrides; unset fields fall back to the provider config."""

    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    system_instruction: str | None = None
    #: Replaces the session's tool list for this call only.
    tools: list[Tool] | None = None

    def __post_init__(self) -> None:
        """Validate numeric ranges early for clear errors."""
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise ConfigurationError(
                "temperature must be between 0 and 2",
                hint="Pass temperature=0.7 or similar.",
            )
        if self.top_p is not None and not 0 <= self.top_p <= 1:
            raise ConfigurationError("top_p must be between 0 and 1")
        if self.max_output_tokens is not None and self.max_output_tokens <= 0:
            raise ConfigurationError(
                "max_output_tokens must be a positive integer",
                hint="Pass max_output_tokens=1024 or greater.",
            )


@dataclass(frozen=True)
class SessionCapabilities:
    """What a session can do, refined per model where the provider varies."""

    supports_streaming: bool
    supports_tools: bool
    supports_images: bool
    supports_system_prompts: bool
    supports_json_schema: bool
    supports_thinking: bool
    max_context_length: int
    supported_mime_types: tuple[str, ...] = ("text/plain",)


@dataclass
class TokenCount:
    input: int = 0
    output: int = 0
    total: int = 0


@dataclass
class SessionStats:
    """Running usage statistics. Durations are in seconds."""

    provider: AIProvider
    model: str
    message_count: int = 0
    token_count: TokenCount = field(default_factory=TokenCount)
    tool_call_count: int = 0
    error_count: int = 0
    average_response_time: float = 0.0
    session_duration: float = 0.0


def is_valid_content(content: Content) -> bool:
    """A turn is valid when it has parts and none of them is empty."""
    if not content.parts:
        return False
    return all(not part.is_empty and part.text != "" for part in content.parts)


def response_schema_json(schema: ResponseSchemaInput) -> dict[str, Any]:
    """Return JSON Schema for a dict or a Pydantic model class."""
    if isinstance(schema, dict):
        return schema
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return schema.model_json_schema()
    raise ConfigurationError(
        "schema must be a Pydantic model class or JSON schema dict",
        hint="Pass a BaseModel subclass or a dict following JSON Schema.",
    )


def _is_plain_text(part: Part) -> bool:
    return (
        part.text is not None
        and part.inline_data is None
        and part.function_call is None
        and part.function_response is None
    )


def _merge_model_parts(parts: Iterable[Part]) -> list[Part]:
    """Collapse streamed deltas into the parts of one history turn.

    Adjacent text fragments are concatenated; thought and empty parts are
    dropped; other parts keep their position.
    """
    merged: list[Part] = []
    for part in parts:
        if part.thought or part.is_empty or part.text == "":
            continue
        if _is_plain_text(part) and merged and _is_plain_text(merged[-1]):
            merged[-1] = replace(merged[-1], text=(merged[-1].text or "") + (part.text or ""))
        else:
            merged.append(part)
    return merged


def _strip_fences(text: str) -> str:
    text = text.strip()
    m = _FENCE_RE.match(text)
    return m.group(1) if m else text


def generate_session_id(prefix: str, *, suffix_length: int = 6) -> str:
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=suffix_length))  # noqa: S311
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


class ChatSession:
    """Stateful conversation bound to one provider adapter.

    Provider specializations only refine capabilities, health checks and a
    few operations the wire protocol lacks; the history and stats logic is
    shared.

    Example:
        session = ChatSession("demo", client)
        response = await session.send_message("Hello")
        async for delta in session.send_message_stream("Tell me more"):
            print(delta.text, end="")
    """

    #: Model-name prefixes mapped to context lengths, checked in order.
    context_lengths: ClassVar[tuple[tuple[str, int], ...]] = ()
    default_context_length: ClassVar[int | None] = None
    #: True when the provider enforces a response schema natively.
    native_json_schema: ClassVar[bool] = False

    def __init__(
        self,
        session_id: str,
        client: ProviderClient,
        *,
        history: list[Content] | None = None,
        timeout_s: float | None = DEFAULT_TIMEOUT_S,
        owns_client: bool = False,
        provider_config: ProviderConfig | None = None,
    ) -> None:
        """Bind to *client*.

        ``owns_client`` makes ``dispose()`` close the adapter; adapters shared
        through the provider factory cache are closed by their owner instead.
        ``provider_config`` supplies the sampling defaults; a cached adapter
        carries the settings of whichever config first built it.
        """
        self.session_id = session_id
        self.client = client
        self.provider_config = provider_config or client.config
        self.provider = client.provider
        self.model = client.config.model
        self.timeout_s = timeout_s
        self._owns_client = owns_client
        self._history: list[Content] = copy.deepcopy(list(history or []))
        self._tools: list[Tool] = []
        self._started = time.monotonic()
        self._stats = SessionStats(provider=self.provider, model=self.model)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(session_id={self.session_id!r}, "
            f"provider={self.provider.value!r}, model={self.model!r})"
        )

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_message(
        self,
        message: str | list[Part] | Content,
        config: GenerationConfig | None = None,
        *,
        token: CancelToken | None = None,
        timeout_s: float | None = None,
    ) -> UnifiedResponse:
        """Send one user turn and append the model's reply to history."""
        user = self._user_turn(message)
        request = self._build_request(user, config, stream=False)
        started = time.monotonic()
        try:
            response = await run_cancellable(
                self.client.generate_content(request),
                token=token,
                timeout_s=self._timeout(timeout_s),
            )
        except asyncio.CancelledError:
            self._history.append(user)
            raise
        except Exception as exc:
            self._stats.error_count += 1
            self._raise_session_error(exc)

        self._history.append(user)
        self._history.extend(copy.deepcopy(response.content))
        self._record_exchange(request, [response], response.content, started)
        return response

    def send_message_stream(
        self,
        message: str | list[Part] | Content,
        config: GenerationConfig | None = None,
        *,
        token: CancelToken | None = None,
        timeout_s: float | None = None,
    ) -> AsyncGenerator[UnifiedResponse, None]:
        """Stream the reply to one user turn.

        The request is validated before this returns. History and stats are
        updated once the stream drains; if it fails or is cancelled first,
        only the user turn is committed.
        """
        user = self._user_turn(message)
        request = self._build_request(user, config, stream=True)
        try:
            stream = self.client.generate_content_stream(request)
        except Exception as exc:
            self._stats.error_count += 1
            self._raise_session_error(exc)
        return self._drain_stream(user, request, stream, token, self._timeout(timeout_s))

    async def _drain_stream(
        self,
        user: Content,
        request: UnifiedRequest,
        stream: AsyncIterator[UnifiedResponse],
        token: CancelToken | None,
        timeout_s: float | None,
    ) -> AsyncGenerator[UnifiedResponse, None]:
        started = time.monotonic()
        chunks: list[UnifiedResponse] = []
        parts: list[Part] = []
        user_committed = False
        try:
            async with aclosing(
                iterate_cancellable(stream, token=token, timeout_s=timeout_s)
            ) as deltas:
                async for chunk in deltas:
                    if not user_committed:
                        self._history.append(user)
                        user_committed = True
                    chunks.append(chunk)
                    for content in chunk.content:
                        parts.extend(content.parts)
                    yield chunk
        except asyncio.CancelledError:
            if not user_committed:
                self._history.append(user)
            raise
        except Exception as exc:
            if not user_committed:
                self._history.append(user)
            self._stats.error_count += 1
            self._raise_session_error(exc)

        if not user_committed:
            self._history.append(user)
        merged = _merge_model_parts(parts)
        model_turns = [Content(role="model", parts=merged)] if merged else []
        self._history.extend(model_turns)
        self._record_exchange(request, chunks, model_turns, started)
        logger.debug("Session %s stream finished (%d chunks)", self.session_id, len(chunks))

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, curated: bool = False) -> list[Content]:
        """Return a snapshot of the history, optionally without invalid turns."""
        history = self.get_curated_history() if curated else self._history
        return copy.deepcopy(history)

    def get_curated_history(self) -> list[Content]:
        return [c for c in self._history if is_valid_content(c)]

    def set_history(self, history: list[Content]) -> None:
        self._history = copy.deepcopy(list(history))

    def clear_history(self) -> None:
        self._history = []

    def add_history(self, content: Content) -> None:
        self._history.append(copy.deepcopy(content))

    def set_tools(self, tools: list[Tool]) -> None:
        self._tools = list(tools)

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools)

    async def get_history_token_count(self) -> int:
        return await self.client.count_tokens(self._history)

    async def trim_history_to_token_limit(self, max_tokens: int) -> None:
        """Drop the oldest turns until the history fits in *max_tokens*.

        A leading user/model pair is removed together; otherwise a single
        turn goes. At least two turns are always kept.
        """
        while len(self._history) > 2 and await self.get_history_token_count() > max_tokens:
            if self._history[0].role == "user" and self._history[1].role == "model":
                del self._history[:2]
            else:
                del self._history[0]

    # ------------------------------------------------------------------
    # One-shot generation
    # ------------------------------------------------------------------

    async def generate_content(
        self,
        contents: list[Content],
        config: GenerationConfig | None = None,
        *,
        model: str | None = None,
        token: CancelToken | None = None,
        timeout_s: float | None = None,
    ) -> UnifiedResponse:
        """Generate from *contents* without touching history."""
        request = self._request_for(contents, config, model=model)
        try:
            return await run_cancellable(
                self.client.generate_content(request),
                token=token,
                timeout_s=self._timeout(timeout_s),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._raise_session_error(exc)

    async def generate_json(
        self,
        contents: list[Content],
        schema: ResponseSchemaInput,
        config: GenerationConfig | None = None,
        *,
        model: str | None = None,
        token: CancelToken | None = None,
        timeout_s: float | None = None,
    ) -> dict[str, Any]:
        """Generate a JSON object matching *schema*.

        Providers without native schema support get an instruction demanding
        schema-conformant JSON, and the text reply is parsed.
        """
        schema_json = response_schema_json(schema)
        config = config or GenerationConfig()
        if not self.native_json_schema:
            instruction = JSON_INSTRUCTION.format(schema=json.dumps(schema_json))
            if config.system_instruction:
                instruction = f"{config.system_instruction}\n\n{instruction}"
            config = replace(config, system_instruction=instruction)

        request = replace(
            self._request_for(contents, config, model=model), response_schema=schema_json
        )
        try:
            response = await run_cancellable(
                self.client.generate_content(request),
                token=token,
                timeout_s=self._timeout(timeout_s),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._raise_session_error(exc)

        try:
            data = json.loads(_strip_fences(response.text))
        except json.JSONDecodeError as e:
            raise JsonParseError(
                f"Failed to parse JSON response from {self.provider.value}: {e}",
                self.session_id,
                self.provider.value,
            ) from e
        if not isinstance(data, dict):
            raise JsonParseError(
                f"Expected a JSON object from {self.provider.value}, got {type(data).__name__}",
                self.session_id,
                self.provider.value,
            )
        if isinstance(schema, type):
            try:
                schema.model_validate(data)
            except ValidationError as e:
                raise JsonParseError(
                    f"JSON response does not match {schema.__name__}: {e.error_count()} error(s)",
                    self.session_id,
                    self.provider.value,
                ) from e
        return data

    async def generate_embedding(self, texts: list[str]) -> list[list[float]]:
        embed = getattr(self.client, "embed_content", None)
        if embed is None:
            raise ChatSessionError(
                f"Embeddings are not supported by {self.provider.value}",
                self.session_id,
                self.provider.value,
                "UNSUPPORTED_OPERATION",
            )
        try:
            return await embed(texts)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._raise_session_error(exc, code="EMBEDDING_ERROR")

    async def count_tokens(self, contents: list[Content]) -> int:
        return await self.client.count_tokens(contents)

    # ------------------------------------------------------------------
    # Introspection and lifecycle
    # ------------------------------------------------------------------

    def get_capabilities(self) -> SessionCapabilities:
        caps = self.client.capabilities
        return SessionCapabilities(
            supports_streaming=caps.supports_streaming,
            supports_tools=caps.supports_tools,
            supports_images=caps.supports_images,
            supports_system_prompts=caps.supports_system_prompts,
            supports_json_schema=self.native_json_schema,
            supports_thinking=False,
            max_context_length=self.get_model_context_length(),
            supported_mime_types=(
                ("text/plain", "image/jpeg", "image/png", "image/gif", "image/webp")
                if caps.supports_images
                else ("text/plain",)
            ),
        )

    def get_model_context_length(self) -> int:
        model = self.model.lower()
        for prefix, length in self.context_lengths:
            if prefix in model:
                return length
        if self.default_context_length is not None:
            return self.default_context_length
        return self.client.capabilities.max_context_length

    def get_stats(self) -> SessionStats:
        """Return a snapshot of the running statistics."""
        stats = copy.deepcopy(self._stats)
        stats.session_duration = time.monotonic() - self._started
        return stats

    @staticmethod
    def get_final_usage_metadata(chunks: list[UnifiedResponse]) -> UsageMetadata | None:
        """Usage from the last chunk that reported any."""
        for chunk in reversed(chunks):
            if chunk.usage_metadata is not None:
                return chunk.usage_metadata
        return None

    async def is_healthy(self) -> bool:
        try:
            return await self.client.test_connection()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Health check failed for %s: %s", self.session_id, e)
            return False

    async def reset(self) -> None:
        """Clear history and stats; identity and tools are kept."""
        self._history = []
        self._stats = SessionStats(provider=self.provider, model=self.model)
        self._started = time.monotonic()

    async def dispose(self) -> None:
        """Clear history and release the adapter when this session owns it."""
        self._history = []
        if self._owns_client:
            await self.client.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _timeout(self, timeout_s: float | None) -> float | None:
        return timeout_s if timeout_s is not None else self.timeout_s

    @staticmethod
    def _user_turn(message: str | list[Part] | Content) -> Content:
        if isinstance(message, Content):
            return copy.deepcopy(message)
        return user_content(message)

    def _request_for(
        self,
        contents: list[Content],
        config: GenerationConfig | None,
        *,
        model: str | None = None,
        stream: bool = False,
    ) -> UnifiedRequest:
        config = config or GenerationConfig()
        provider_config = self.provider_config
        tools = config.tools if config.tools is not None else self._tools
        return UnifiedRequest(
            model=model or self.model,
            contents=list(contents),
            tools=list(tools) or None,
            temperature=(
                config.temperature
                if config.temperature is not None
                else provider_config.temperature
            ),
            max_tokens=(
                config.max_output_tokens
                if config.max_output_tokens is not None
                else provider_config.max_tokens
            ),
            top_p=config.top_p if config.top_p is not None else provider_config.top_p,
            stream=stream,
            system_instruction=config.system_instruction,
        )

    def _build_request(
        self, user: Content, config: GenerationConfig | None, *, stream: bool
    ) -> UnifiedRequest:
        return self._request_for([*self._history, user], config, stream=stream)

    def _record_exchange(
        self,
        request: UnifiedRequest,
        chunks: list[UnifiedResponse],
        model_turns: list[Content],
        started: float,
    ) -> None:
        usage = self.get_final_usage_metadata(chunks)
        estimate = getattr(self.client, "estimate_tokens", None)
        input_tokens = usage.prompt_token_count if usage else 0
        output_tokens = usage.candidates_token_count if usage else 0
        if not input_tokens and callable(estimate):
            input_tokens = estimate(request.contents)
        if not output_tokens and callable(estimate):
            output_tokens = estimate(model_turns)

        stats = self._stats
        stats.message_count += 1
        stats.token_count.input += input_tokens
        stats.token_count.output += output_tokens
        stats.token_count.total += input_tokens + output_tokens
        elapsed = time.monotonic() - started
        stats.average_response_time += (elapsed - stats.average_response_time) / stats.message_count
        stats.tool_call_count += sum(
            1 for turn in model_turns for part in turn.parts if part.function_call is not None
        )

    def _raise_session_error(self, exc: Exception, *, code: str | None = None) -> NoReturn:
        """Re-raise *exc* as a session-scoped error.

        Pre-flight validation failures and errors that are already
        session-scoped propagate unchanged.
        """
        if isinstance(exc, _PASSTHROUGH_ERRORS):
            raise exc
        raise self._session_error(exc, code=code) from exc

    def _session_error(self, exc: Exception, *, code: str | None = None) -> ChatSessionError:
        provider = self.provider.value
        if isinstance(exc, RequestTimeoutError):
            return ChatSessionTimeoutError(str(exc), self.session_id, provider, hint=exc.hint)
        if isinstance(exc, RateLimitError):
            return ChatSessionRateLimitError(
                str(exc), self.session_id, provider, exc.retry_after_s, hint=exc.hint
            )
        if isinstance(exc, APIError):
            return ChatSessionError(
                str(exc), self.session_id, provider, code or exc.code, hint=exc.hint
            )
        return ChatSessionError(str(exc), self.session_id, provider, code or "UNKNOWN_ERROR")


class SessionFactory:
    """Builds sessions for the one provider a subclass owns."""

    provider: ClassVar[AIProvider]
    session_class: ClassVar[type[ChatSession]] = ChatSession

    def __init__(
        self,
        provider_factory: ProviderFactory | None = None,
        *,
        timeout_s: float | None = DEFAULT_TIMEOUT_S,
    ) -> None:
        """Use *provider_factory* to share cached adapters, or build private ones."""
        self._provider_factory = provider_factory
        self.timeout_s = timeout_s

    def get_supported_providers(self) -> list[AIProvider]:
        return [self.provider]

    async def get_available_models(self, provider: AIProvider | str | None = None) -> list[str]:
        return list(PROVIDER_MODELS[self.provider])

    async def create_session(
        self, provider: AIProvider | str, model: str, **overrides: Any
    ) -> ChatSession:
        """Create a session for *model*; *overrides* are ProviderConfig fields."""
        p = coerce_provider(provider)
        if p is not self.provider:
            raise ChatSessionError(
                f"Cannot create {p.value} session with {self.provider.value} factory",
                "unknown",
                p.value,
                "INVALID_PROVIDER",
            )
        config = apply_environment_variables(
            default_provider_config(p, **{**overrides, "model": model, "enabled": True})
        )
        if self._provider_factory is not None:
            client = self._provider_factory.create_client(config)
            owns_client = False
        else:
            client = ProviderFactory.build_client(config)
            owns_client = True

        session = self.session_class(
            generate_session_id(f"{p.value}-{model}"),
            client,
            timeout_s=self.timeout_s,
            owns_client=owns_client,
            provider_config=config,
        )
        await self._check_session(session)
        logger.debug("Created %s", session)
        return session

    async def _check_session(self, session: ChatSession) -> None:
        """Hook for provider-specific readiness probes."""
        return None
