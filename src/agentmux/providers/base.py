"""Provider protocol, capability flags and the shared adapter base class."""

from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
import json
import logging
import math
import random
import string
import time
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

from agentmux.errors import (
    APIError,
    ConfigurationError,
    ContextLengthExceededError,
    UnsupportedFeatureError,
)
from agentmux.providers._errors import wrap_provider_error
from agentmux.retry import (
    RetryPolicy,
    _compute_backoff_delay,
    _retry_after_from_error,
    retry_async,
    should_retry_provider_error,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from agentmux.config import ProviderConfig
    from agentmux.providers.models import (
        AIProvider,
        Content,
        UnifiedRequest,
        UnifiedResponse,
    )

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags and limits declared by an adapter."""

    supports_streaming: bool
    supports_tools: bool
    supports_images: bool
    supports_system_prompts: bool
    max_context_length: int
    #: Empty means the model list is not known yet and is not checked.
    supported_models: tuple[str, ...] = field(default_factory=tuple)

    def flag(self, name: str) -> bool:
        """Look up a boolean capability by field name (e.g. ``supports_tools``)."""
        value = getattr(self, name, False)
        return bool(value) if isinstance(value, bool) else False


@runtime_checkable
class ProviderClient(Protocol):
    """Minimal adapter protocol every provider implements."""

    config: ProviderConfig

    @property
    def provider(self) -> AIProvider:
        """Provider id served by this adapter."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Declared feature flags and limits."""
        ...

    async def generate_content(self, request: UnifiedRequest) -> UnifiedResponse:
        """Run one non-streaming generation."""
        ...

    def generate_content_stream(
        self, request: UnifiedRequest
    ) -> AsyncIterator[UnifiedResponse]:
        """Stream incremental deltas; the last one carries usage."""
        ...

    async def count_tokens(self, contents: list[Content]) -> int:
        """Count (or estimate) tokens for *contents*."""
        ...

    async def validate_config(self) -> bool:
        """Return True when the configuration looks usable."""
        ...

    async def get_available_models(self) -> list[str]:
        """List models this adapter can serve."""
        ...

    async def test_connection(self) -> bool:
        """Probe the backend; never raises for ordinary failures."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...


def _content_chars(contents: list[Content]) -> int:
    total = 0
    for content in contents:
        for part in content.parts:
            if part.text:
                total += len(part.text)
            if part.function_call is not None:
                total += len(part.function_call.name) + len(json.dumps(part.function_call.args))
            if part.function_response is not None:
                total += len(json.dumps(part.function_response.response))
    return total


class BaseProviderClient:
    """Shared adapter behavior: request validation, estimation and retries.

    Subclasses implement ``_generate`` and ``_stream``; the public entry points
    validate the request before touching the network and retry transient
    failures with exponential backoff.
    """

    provider_id: ClassVar[AIProvider]
    #: Characters per token used for local estimates.
    chars_per_token: ClassVar[float] = 4.0

    def __init__(
        self, config: ProviderConfig, *, retry_policy: RetryPolicy | None = None
    ) -> None:
        """Bind to *config*; a disabled config fails construction."""
        if not config.enabled:
            raise ConfigurationError(
                f"Provider {config.provider.value} is disabled",
                hint="Set enabled=True in the provider configuration.",
            )
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def provider(self) -> AIProvider:
        return self.provider_id

    @property
    def capabilities(self) -> ProviderCapabilities:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Validation and estimation
    # ------------------------------------------------------------------

    def estimate_tokens(self, contents: list[Content]) -> int:
        """Cheap local token estimate for pre-flight checks."""
        return math.ceil(_content_chars(contents) / self.chars_per_token)

    def validate_request(self, request: UnifiedRequest) -> None:
        """Reject requests the adapter cannot serve, before any network call."""
        caps = self.capabilities
        name = self.provider.value

        if request.stream and not caps.supports_streaming:
            raise UnsupportedFeatureError(
                f"Provider {name} does not support streaming", provider=name
            )
        if request.tools and not caps.supports_tools:
            raise UnsupportedFeatureError(
                f"Provider {name} does not support tools", provider=name
            )
        if caps.supported_models and request.model not in caps.supported_models:
            raise UnsupportedFeatureError(
                f"Model {request.model} is not supported by {name}",
                hint=f"Supported models: {', '.join(caps.supported_models)}",
                provider=name,
            )
        if not caps.supports_images and any(
            part.inline_data is not None
            for content in request.contents
            for part in content.parts
        ):
            raise UnsupportedFeatureError(
                f"Provider {name} does not support image inputs", provider=name
            )

        estimated = self.estimate_tokens(request.contents)
        if estimated > caps.max_context_length:
            raise ContextLengthExceededError(
                f"Request exceeds maximum context length: {estimated} > "
                f"{caps.max_context_length} estimated tokens",
                hint="Trim the conversation history or start a new session.",
                provider=name,
            )

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def generate_content(self, request: UnifiedRequest) -> UnifiedResponse:
        self.validate_request(request)
        logger.debug(
            "%s generate model=%s turns=%d",
            self.provider.value,
            request.model,
            len(request.contents),
        )
        return await retry_async(lambda: self._generate(request), policy=self.retry_policy)

    def generate_content_stream(
        self, request: UnifiedRequest
    ) -> AsyncIterator[UnifiedResponse]:
        self.validate_request(request)
        logger.debug(
            "%s stream model=%s turns=%d",
            self.provider.value,
            request.model,
            len(request.contents),
        )
        return self._stream_with_retry(request)

    async def _stream_with_retry(
        self, request: UnifiedRequest
    ) -> AsyncIterator[UnifiedResponse]:
        # Only failures before the first delta are retried; replaying a
        # half-delivered stream would duplicate output.
        policy = self.retry_policy
        for attempt in range(policy.max_attempts):
            delivered = False
            try:
                async with aclosing(self._stream(request)) as deltas:
                    async for delta in deltas:
                        delivered = True
                        yield delta
                return
            except Exception as exc:
                if (
                    delivered
                    or not should_retry_provider_error(exc)
                    or attempt + 1 >= policy.max_attempts
                ):
                    raise
                delay = _compute_backoff_delay(policy, attempt=attempt)
                retry_after = _retry_after_from_error(exc)
                if retry_after is not None:
                    delay = max(delay, retry_after)
                logger.debug("Retrying stream after %s (sleeping %.2fs)", type(exc).__name__, delay)
                await asyncio.sleep(delay)

    async def count_tokens(self, contents: list[Content]) -> int:
        return self.estimate_tokens(contents)

    async def validate_config(self) -> bool:
        return bool(self.config.model)

    async def get_available_models(self) -> list[str]:
        return list(self.capabilities.supported_models)

    async def test_connection(self) -> bool:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    async def _generate(self, request: UnifiedRequest) -> UnifiedResponse:
        raise NotImplementedError

    def _stream(self, request: UnifiedRequest) -> AsyncIterator[UnifiedResponse]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _generate_response_id(self) -> str:
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))  # noqa: S311
        return f"{self.provider.value}-{int(time.time() * 1000)}-{suffix}"

    def _wrap_error(
        self, exc: BaseException, *, phase: str, message: str | None = None
    ) -> APIError:
        return wrap_provider_error(
            exc,
            provider=self.provider.value,
            phase=phase,
            message=message,
            model=self.config.model,
        )

    async def __aenter__(self) -> Any:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
