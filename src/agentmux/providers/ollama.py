"""Ollama adapter: local daemon chat API over HTTP with NDJSON streaming."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import httpx

from agentmux.config import DEFAULT_OLLAMA_ENDPOINT, PROVIDER_MODELS, get_provider_env_vars
from agentmux.errors import APIError
from agentmux.providers._errors import error_for_status
from agentmux.providers._streaming import iter_ndjson
from agentmux.providers.base import BaseProviderClient, ProviderCapabilities
from agentmux.providers.models import (
    AIProvider,
    Content,
    FinishReason,
    Part,
    UnifiedResponse,
    UsageMetadata,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from agentmux.config import ProviderConfig
    from agentmux.providers.models import UnifiedRequest
    from agentmux.retry import RetryPolicy

logger = logging.getLogger(__name__)

OLLAMA_MAX_CONTEXT = 8192
DEFAULT_TIMEOUT_S = 120.0


def normalize_endpoint(endpoint: str) -> str:
    """Return *endpoint* with exactly one trailing ``/api`` segment."""
    endpoint = endpoint.rstrip("/")
    if not endpoint.endswith("/api"):
        endpoint += "/api"
    return endpoint


def model_matches(listed: str, wanted: str) -> bool:
    """Match daemon tags, where ``llama2`` is served as ``llama2:latest``."""
    return listed == wanted or listed == f"{wanted}:latest"


def _usage_from(payload: dict[str, Any]) -> UsageMetadata:
    prompt = int(payload.get("prompt_eval_count") or 0)
    completion = int(payload.get("eval_count") or 0)
    return UsageMetadata(
        prompt_token_count=prompt,
        candidates_token_count=completion,
        total_token_count=prompt + completion,
    )


class OllamaProviderClient(BaseProviderClient):
    """Adapter for a locally served Ollama daemon.

    Ollama needs no credential. The model list is whatever the daemon has
    pulled, so ``supported_models`` stays empty and the pre-flight model
    check is skipped.
    """

    provider_id = AIProvider.OLLAMA

    def __init__(
        self,
        config: ProviderConfig,
        *,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config, retry_policy=retry_policy)
        env = get_provider_env_vars(AIProvider.OLLAMA)
        self.endpoint = normalize_endpoint(
            config.endpoint or env["endpoint"] or DEFAULT_OLLAMA_ENDPOINT
        )
        self._client: httpx.AsyncClient | None = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(DEFAULT_TIMEOUT_S, connect=5.0),
                proxy=self.config.proxy,
            )
        return self._client

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_streaming=True,
            supports_tools=False,
            supports_images=True,
            supports_system_prompts=True,
            max_context_length=OLLAMA_MAX_CONTEXT,
            supported_models=(),
        )

    def _url(self, path: str) -> str:
        return f"{self.endpoint}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Wire conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _build_messages(contents: list[Content]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        for content in contents:
            text = "\n".join(p.text for p in content.parts if p.text and not p.thought)
            images = [
                p.inline_data.data
                for p in content.parts
                if p.inline_data is not None and p.inline_data.mime_type.startswith("image/")
            ]
            if not text and not images:
                continue
            message: dict[str, Any] = {
                "role": "assistant" if content.role == "model" else "user",
                "content": text,
            }
            if images:
                message["images"] = images
            messages.append(message)
        return messages

    def _build_body(self, request: UnifiedRequest, *, stream: bool) -> dict[str, Any]:
        messages = self._build_messages(request.contents)
        if request.system_instruction:
            messages.insert(0, {"role": "system", "content": request.system_instruction})
        body: dict[str, Any] = {"model": request.model, "messages": messages, "stream": stream}
        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if options:
            body["options"] = options
        if request.response_schema is not None:
            body["format"] = "json"
        return body

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _status_error(self, response: httpx.Response, *, phase: str) -> APIError:
        return error_for_status(
            response.status_code,
            f"Ollama API error: {response.status_code} {response.reason_phrase} - {response.text}",
            provider="ollama",
            phase=phase,
            model=self.config.model,
        )

    async def _request_json(
        self, path: str, body: dict[str, Any] | None = None, *, phase: str
    ) -> dict[str, Any]:
        client = self._get_client()
        try:
            if body is None:
                response = await client.get(self._url(path))
            else:
                response = await client.post(self._url(path), json=body)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise self._wrap_error(e, phase=phase, message=f"Ollama {path} request failed") from e
        if response.status_code >= 400:
            raise self._status_error(response, phase=phase)
        try:
            payload = response.json()
        except ValueError as e:
            raise APIError(
                f"Ollama returned invalid JSON from /{path}", provider="ollama", phase=phase
            ) from e
        return payload if isinstance(payload, dict) else {}

    async def _generate(self, request: UnifiedRequest) -> UnifiedResponse:
        payload = await self._request_json(
            "chat", self._build_body(request, stream=False), phase="generate"
        )
        text = (payload.get("message") or {}).get("content") or ""
        return UnifiedResponse(
            id=self._generate_response_id(),
            provider=AIProvider.OLLAMA,
            model=payload.get("model") or request.model,
            content=[Content(role="model", parts=[Part(text=text)])],
            usage_metadata=_usage_from(payload),
            finish_reason=FinishReason.STOP if payload.get("done") else FinishReason.OTHER,
        )

    async def _stream(self, request: UnifiedRequest) -> AsyncIterator[UnifiedResponse]:
        client = self._get_client()
        body = self._build_body(request, stream=True)
        try:
            async with client.stream("POST", self._url("chat"), json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise self._status_error(response, phase="stream")
                async for chunk in iter_ndjson(response.aiter_lines()):
                    if chunk.get("error"):
                        raise APIError(
                            f"Ollama stream error: {chunk['error']}",
                            provider="ollama",
                            phase="stream",
                        )
                    text = (chunk.get("message") or {}).get("content")
                    if text:
                        yield UnifiedResponse(
                            id=self._generate_response_id(),
                            provider=AIProvider.OLLAMA,
                            model=chunk.get("model") or request.model,
                            content=[Content(role="model", parts=[Part(text=text)])],
                        )
                    if chunk.get("done"):
                        yield UnifiedResponse(
                            id=self._generate_response_id(),
                            provider=AIProvider.OLLAMA,
                            model=chunk.get("model") or request.model,
                            usage_metadata=_usage_from(chunk),
                            finish_reason=FinishReason.STOP,
                        )
                        return
        except (asyncio.CancelledError, APIError):
            raise
        except Exception as e:
            raise self._wrap_error(e, phase="stream", message="Ollama stream failed") from e

    async def validate_config(self) -> bool:
        return bool(self.config.model) and await self.test_connection()

    async def list_models(self) -> list[str]:
        """Return the model tags pulled onto the daemon (``/api/tags``)."""
        payload = await self._request_json("tags", phase="models")
        return [str(m["name"]) for m in payload.get("models") or [] if m.get("name")]

    async def get_available_models(self) -> list[str]:
        """List pulled models, falling back to the static list when unreachable."""
        try:
            return await self.list_models()
        except APIError as e:
            logger.warning("Failed to fetch Ollama models: %s", e)
            return list(PROVIDER_MODELS[AIProvider.OLLAMA])

    async def test_connection(self) -> bool:
        try:
            await self._request_json("tags", phase="connect")
        except APIError as e:
            logger.debug("Ollama connection test failed: %s", e)
            return False
        return True

    async def is_model_available(self, model: str) -> bool:
        try:
            models = await self.list_models()
        except APIError as e:
            logger.debug("Ollama model lookup failed: %s", e)
            return False
        return any(model_matches(m, model) for m in models)

    async def get_model_info(self, model: str) -> dict[str, Any] | None:
        """Return ``/api/show`` details for *model*, or None when unavailable."""
        try:
            return await self._request_json("show", {"name": model}, phase="show")
        except APIError as e:
            logger.debug("Ollama show failed for %s: %s", model, e)
            return None

    async def pull_model(self, model: str) -> None:
        """Pull *model* onto the daemon, draining the progress stream."""
        client = self._get_client()
        try:
            async with client.stream("POST", self._url("pull"), json={"name": model}) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise self._status_error(response, phase="pull")
                async for status in iter_ndjson(response.aiter_lines()):
                    if status.get("error"):
                        raise APIError(
                            f"Failed to pull model {model}: {status['error']}",
                            provider="ollama",
                            phase="pull",
                        )
                    logger.debug("Ollama pull %s: %s", model, status.get("status"))
        except (asyncio.CancelledError, APIError):
            raise
        except Exception as e:
            raise self._wrap_error(e, phase="pull", message=f"Failed to pull model {model}") from e

    async def embed_content(
        self, texts: list[str], *, model: str | None = None
    ) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            payload = await self._request_json(
                "embeddings",
                {"model": model or self.config.model, "prompt": text},
                phase="embed",
            )
            vectors.append([float(v) for v in payload.get("embedding") or []])
        return vectors

    async def aclose(self) -> None:
        client = self._client
        if client is None or not self._owns_client:
            return
        self._client = None
        await client.aclose()
