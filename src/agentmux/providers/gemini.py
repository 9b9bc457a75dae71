"""Gemini adapter built on the google-genai SDK."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import TYPE_CHECKING, Any
import uuid

from agentmux.config import PROVIDER_MODELS, get_provider_env_vars
from agentmux.errors import APIError, AuthenticationError
from agentmux.providers.base import BaseProviderClient, ProviderCapabilities
from agentmux.providers.models import (
    AIProvider,
    Content,
    FinishReason,
    FunctionCall,
    InlineData,
    Part,
    ProviderAuthType,
    UnifiedResponse,
    UsageMetadata,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from agentmux.config import ProviderConfig
    from agentmux.providers.models import Tool, UnifiedRequest
    from agentmux.retry import RetryPolicy

logger = logging.getLogger(__name__)

GEMINI_MAX_CONTEXT = 2_097_152
DEFAULT_EMBEDDING_MODEL = "text-embedding-004"

_FINISH_REASONS = {r.value: r for r in FinishReason}


class GeminiProviderClient(BaseProviderClient):
    """Google Gemini adapter (Developer API or Vertex AI)."""

    provider_id = AIProvider.GEMINI

    def __init__(
        self, config: ProviderConfig, *, retry_policy: RetryPolicy | None = None
    ) -> None:
        """Resolve credentials; a missing API key fails construction."""
        super().__init__(config, retry_policy=retry_policy)
        env = get_provider_env_vars(AIProvider.GEMINI)
        self.api_key = config.api_key or env["api_key"]
        self.project = env.get("project")
        self.location = env.get("location")
        self.use_vertexai = bool(config.vertexai) or (
            config.auth_type is ProviderAuthType.VERTEX_AI
        )
        if config.auth_type is ProviderAuthType.GEMINI_API_KEY and not self.api_key:
            raise AuthenticationError(
                "Gemini API key is required",
                hint="Set GEMINI_API_KEY (or GOOGLE_API_KEY) or pass ProviderConfig.api_key.",
                provider="gemini",
                phase="init",
            )
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazy-initialize the Gemini client."""
        if self._client is None:
            from google import genai

            if self.use_vertexai and not self.api_key:
                self._client = genai.Client(
                    vertexai=True, project=self.project, location=self.location
                )
            else:
                self._client = genai.Client(
                    api_key=self.api_key, vertexai=self.use_vertexai or None
                )
        return self._client

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_streaming=True,
            supports_tools=True,
            supports_images=True,
            supports_system_prompts=True,
            max_context_length=GEMINI_MAX_CONTEXT,
            supported_models=PROVIDER_MODELS[AIProvider.GEMINI],
        )

    # ------------------------------------------------------------------
    # Wire conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _convert_part(part: Part) -> Any:
        from google.genai import types

        if part.function_call is not None:
            fc = part.function_call
            return types.Part(
                function_call=types.FunctionCall(name=fc.name, args=fc.args, id=fc.id)
            )
        if part.function_response is not None:
            fr = part.function_response
            return types.Part(
                function_response=types.FunctionResponse(
                    name=fr.name, response=fr.response, id=fr.id
                )
            )
        if part.inline_data is not None:
            return types.Part(
                inline_data=types.Blob(
                    mime_type=part.inline_data.mime_type,
                    data=base64.b64decode(part.inline_data.data),
                )
            )
        return types.Part(text=part.text or "", thought=part.thought or None)

    def _convert_contents(self, contents: list[Content]) -> list[Any]:
        from google.genai import types

        return [
            types.Content(role=c.role, parts=[self._convert_part(p) for p in c.parts])
            for c in contents
        ]

    @staticmethod
    def _convert_tools(tools: list[Tool]) -> list[Any]:
        from google.genai import types

        return [
            types.Tool(
                function_declarations=[
                    types.FunctionDeclaration(
                        name=d.name,
                        description=d.description,
                        parameters=d.parameters,
                    )
                    for d in t.function_declarations
                ]
            )
            for t in tools
        ]

    def _build_config(self, request: UnifiedRequest) -> Any:
        from google.genai import types

        config_kwargs: dict[str, Any] = {}
        if request.temperature is not None:
            config_kwargs["temperature"] = request.temperature
        if request.top_p is not None:
            config_kwargs["top_p"] = request.top_p
        if request.max_tokens is not None:
            config_kwargs["max_output_tokens"] = request.max_tokens
        if request.system_instruction is not None:
            config_kwargs["system_instruction"] = request.system_instruction
        if request.response_schema is not None:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_json_schema"] = request.response_schema
        if request.tools:
            config_kwargs["tools"] = self._convert_tools(request.tools)
        return types.GenerateContentConfig(**config_kwargs)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def _generate(self, request: UnifiedRequest) -> UnifiedResponse:
        client = self._get_client()
        try:
            response = await client.aio.models.generate_content(
                model=request.model,
                contents=self._convert_contents(request.contents),
                config=self._build_config(request),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise self._wrap_error(e, phase="generate", message="Gemini generate failed") from e

        if not response:
            raise APIError(
                "Gemini returned an empty response.", provider="gemini", phase="generate"
            )
        return self._parse_response(response, model=request.model)

    async def _stream(self, request: UnifiedRequest) -> AsyncIterator[UnifiedResponse]:
        client = self._get_client()
        try:
            stream = await client.aio.models.generate_content_stream(
                model=request.model,
                contents=self._convert_contents(request.contents),
                config=self._build_config(request),
            )
            async for chunk in stream:
                if chunk is None:
                    continue
                yield self._parse_response(chunk, model=request.model)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise self._wrap_error(e, phase="stream", message="Gemini stream failed") from e

    async def count_tokens(self, contents: list[Content]) -> int:
        """Count tokens via the API, falling back to a local estimate."""
        client = self._get_client()
        try:
            result = await client.aio.models.count_tokens(
                model=self.config.model, contents=self._convert_contents(contents)
            )
            total = getattr(result, "total_tokens", None)
            if isinstance(total, int):
                return total
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Gemini count_tokens failed, estimating locally: %s", e)
        return self.estimate_tokens(contents)

    async def embed_content(
        self, texts: list[str], *, model: str = DEFAULT_EMBEDDING_MODEL
    ) -> list[list[float]]:
        client = self._get_client()
        try:
            result = await client.aio.models.embed_content(model=model, contents=texts)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise self._wrap_error(e, phase="embed", message="Gemini embedding failed") from e
        return [list(getattr(e, "values", None) or []) for e in (result.embeddings or [])]

    async def validate_config(self) -> bool:
        if not self.config.model:
            return False
        return bool(self.api_key) or self.use_vertexai or not self.config.requires_api_key

    async def test_connection(self) -> bool:
        client = self._get_client()
        try:
            await client.aio.models.count_tokens(model=self.config.model, contents="test")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Gemini connection test failed: %s", e)
            return False
        return True

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        aclose = getattr(client.aio, "aclose", None)
        if callable(aclose):
            await aclose()

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse_response(self, response: Any, *, model: str) -> UnifiedResponse:
        """Parse a Gemini response (or stream chunk) into a UnifiedResponse."""
        parts: list[Part] = []
        finish_reason: FinishReason | None = None
        candidates = getattr(response, "candidates", None) or []
        if candidates:
            candidate = candidates[0]
            finish_reason = _normalize_finish_reason(getattr(candidate, "finish_reason", None))
            content = getattr(candidate, "content", None)
            for raw in getattr(content, "parts", None) or []:
                part = _parse_part(raw)
                if part is not None:
                    parts.append(part)

        usage: UsageMetadata | None = None
        um = getattr(response, "usage_metadata", None)
        if um is not None:
            usage = UsageMetadata(
                prompt_token_count=getattr(um, "prompt_token_count", None) or 0,
                candidates_token_count=getattr(um, "candidates_token_count", None) or 0,
                total_token_count=getattr(um, "total_token_count", None) or 0,
            )

        return UnifiedResponse(
            id=getattr(response, "response_id", None) or self._generate_response_id(),
            provider=AIProvider.GEMINI,
            model=getattr(response, "model_version", None) or model,
            content=[Content(role="model", parts=parts)] if parts else [],
            usage_metadata=usage,
            finish_reason=finish_reason,
        )


def _parse_part(raw: Any) -> Part | None:
    fc = getattr(raw, "function_call", None)
    if fc is not None:
        return Part(
            function_call=FunctionCall(
                name=str(getattr(fc, "name", "")),
                args=dict(getattr(fc, "args", None) or {}),
                id=getattr(fc, "id", None) or f"call_{uuid.uuid4().hex[:8]}",
            )
        )
    blob = getattr(raw, "inline_data", None)
    if blob is not None and getattr(blob, "data", None):
        return Part(
            inline_data=InlineData(
                mime_type=str(getattr(blob, "mime_type", "application/octet-stream")),
                data=base64.b64encode(blob.data).decode("ascii"),
            )
        )
    text = getattr(raw, "text", None)
    if isinstance(text, str):
        return Part(text=text, thought=bool(getattr(raw, "thought", False)))
    return None


def _normalize_finish_reason(raw: Any) -> FinishReason | None:
    if raw is None:
        return None
    name = getattr(raw, "name", None) or getattr(raw, "value", None) or str(raw)
    return _FINISH_REASONS.get(str(name), FinishReason.OTHER)
