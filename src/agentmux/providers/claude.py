"""Claude adapter: Anthropic Messages API over raw HTTP with SSE streaming."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from agentmux.config import DEFAULT_CLAUDE_ENDPOINT, PROVIDER_MODELS, get_provider_env_vars
from agentmux.errors import APIError, AuthenticationError
from agentmux.providers._errors import classify_message, error_for_status, parse_retry_after
from agentmux.providers._streaming import iter_sse_json
from agentmux.providers.base import BaseProviderClient, ProviderCapabilities
from agentmux.providers.models import (
    AIProvider,
    Content,
    FinishReason,
    FunctionCall,
    Part,
    UnifiedResponse,
    UsageMetadata,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from agentmux.config import ProviderConfig
    from agentmux.providers.models import Tool, UnifiedRequest
    from agentmux.retry import RetryPolicy

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
CLAUDE_MAX_CONTEXT = 200_000
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT_S = 120.0

_STOP_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "tool_use": FinishReason.STOP,
    "max_tokens": FinishReason.MAX_TOKENS,
}


def _normalize_stop_reason(raw: Any) -> FinishReason | None:
    if raw is None:
        return None
    return _STOP_REASONS.get(str(raw), FinishReason.OTHER)


def _append_message(messages: list[dict[str, Any]], message: dict[str, Any]) -> None:
    """Append, merging into the previous message when roles repeat."""
    if messages and messages[-1]["role"] == message["role"]:
        messages[-1]["content"].extend(message["content"])
        return
    messages.append(message)


def _to_block(part: Part) -> dict[str, Any] | None:
    if part.function_call is not None:
        fc = part.function_call
        return {"type": "tool_use", "id": fc.id or fc.name, "name": fc.name, "input": fc.args}
    if part.function_response is not None:
        fr = part.function_response
        return {
            "type": "tool_result",
            "tool_use_id": fr.id or fr.name,
            "content": json.dumps(fr.response),
        }
    if part.inline_data is not None:
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": part.inline_data.mime_type,
                "data": part.inline_data.data,
            },
        }
    if part.text and not part.thought:
        return {"type": "text", "text": part.text}
    return None


def _looks_like_system_prompt(content: Content) -> bool:
    return content.role == "user" and "you are" in content.text.lower()


class ClaudeProviderClient(BaseProviderClient):
    """Anthropic Claude adapter speaking the Messages API directly."""

    provider_id = AIProvider.CLAUDE
    chars_per_token = 3.5

    def __init__(
        self,
        config: ProviderConfig,
        *,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Resolve credentials and endpoint; a missing API key fails construction."""
        super().__init__(config, retry_policy=retry_policy)
        env = get_provider_env_vars(AIProvider.CLAUDE)
        self.api_key = config.api_key or env["api_key"]
        if not self.api_key:
            raise AuthenticationError(
                "Claude API key is required",
                hint="Set ANTHROPIC_API_KEY or pass ProviderConfig.api_key.",
                provider="claude",
                phase="init",
            )
        self.endpoint = config.endpoint or env["endpoint"] or DEFAULT_CLAUDE_ENDPOINT
        self._client: httpx.AsyncClient | None = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(DEFAULT_TIMEOUT_S, connect=10.0),
                proxy=self.config.proxy,
            )
        return self._client

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_streaming=True,
            supports_tools=True,
            supports_images=True,
            supports_system_prompts=True,
            max_context_length=CLAUDE_MAX_CONTEXT,
            supported_models=PROVIDER_MODELS[AIProvider.CLAUDE],
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    # ------------------------------------------------------------------
    # Wire conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _build_messages(contents: list[Content]) -> tuple[str | None, list[dict[str, Any]]]:
        """Split off a leading system-like user turn and map the rest.

        Claude requires user/assistant alternation, so consecutive same-role
        turns are merged.
        """
        system: str | None = None
        turns = list(contents)
        if len(turns) > 1 and _looks_like_system_prompt(turns[0]):
            system = turns[0].text
            turns = turns[1:]

        messages: list[dict[str, Any]] = []
        for content in turns:
            blocks = [b for b in (_to_block(p) for p in content.parts) if b is not None]
            if not blocks:
                continue
            role = "assistant" if content.role == "model" else "user"
            _append_message(messages, {"role": role, "content": blocks})
        return system, messages

    @staticmethod
    def _convert_tools(tools: list[Tool]) -> list[dict[str, Any]]:
        return [
            {
                "name": d.name,
                "description": d.description,
                "input_schema": d.parameters or {"type": "object", "properties": {}},
            }
            for t in tools
            for d in t.function_declarations
        ]

    def _build_body(self, request: UnifiedRequest, *, stream: bool) -> dict[str, Any]:
        system, messages = self._build_messages(request.contents)
        if request.system_instruction:
            system = (
                f"{request.system_instruction}\n\n{system}"
                if system
                else request.system_instruction
            )
        body: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or self.config.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system:
            body["system"] = system
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
        if stream:
            body["stream"] = True
        return body

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _status_error(self, response: httpx.Response, *, phase: str) -> APIError:
        detail = response.text
        try:
            payload = response.json()
            detail = payload.get("error", {}).get("message") or detail
        except (json.JSONDecodeError, AttributeError):
            pass
        return error_for_status(
            response.status_code,
            f"Claude API error (status={response.status_code}): {detail}",
            provider="claude",
            phase=phase,
            model=self.config.model,
            retry_after_s=parse_retry_after(response.headers.get("retry-after")),
        )

    async def _generate(self, request: UnifiedRequest) -> UnifiedResponse:
        client = self._get_client()
        try:
            response = await client.post(
                self.endpoint,
                headers=self._headers,
                json=self._build_body(request, stream=False),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise self._wrap_error(e, phase="generate", message="Claude generate failed") from e

        if response.status_code >= 400:
            raise self._status_error(response, phase="generate")
        try:
            payload = response.json()
        except ValueError as e:
            raise APIError(
                "Claude returned an invalid JSON body", provider="claude", phase="generate"
            ) from e
        return self._parse_response(payload, model=request.model)

    async def _stream(self, request: UnifiedRequest) -> AsyncIterator[UnifiedResponse]:
        client = self._get_client()
        body = self._build_body(request, stream=True)
        model = request.model
        input_tokens = 0
        output_tokens = 0
        finish_reason: FinishReason | None = None
        tool_blocks: dict[int, dict[str, Any]] = {}

        try:
            async with client.stream(
                "POST", self.endpoint, headers=self._headers, json=body
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise self._status_error(response, phase="stream")

                async for event in iter_sse_json(response.aiter_bytes()):
                    kind = event.get("type")
                    if kind == "message_start":
                        message = event.get("message") or {}
                        model = message.get("model") or model
                        input_tokens = (message.get("usage") or {}).get("input_tokens", 0)
                    elif kind == "content_block_start":
                        block = event.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            tool_blocks[event.get("index", 0)] = {
                                "id": block.get("id"),
                                "name": block.get("name", ""),
                                "json": "",
                            }
                    elif kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield self._delta([Part(text=delta["text"])], model=model)
                        elif delta.get("type") == "input_json_delta":
                            pending = tool_blocks.get(event.get("index", 0))
                            if pending is not None:
                                pending["json"] += delta.get("partial_json", "")
                    elif kind == "content_block_stop":
                        pending = tool_blocks.pop(event.get("index", 0), None)
                        if pending is not None:
                            yield self._delta([_tool_part(pending)], model=model)
                    elif kind == "message_delta":
                        delta = event.get("delta") or {}
                        usage = event.get("usage") or {}
                        finish_reason = (
                            _normalize_stop_reason(delta.get("stop_reason")) or finish_reason
                        )
                        output_tokens = usage.get("output_tokens", output_tokens)
                    elif kind == "message_stop":
                        final = self._delta([], model=model)
                        final.usage_metadata = UsageMetadata(
                            prompt_token_count=input_tokens,
                            candidates_token_count=output_tokens,
                            total_token_count=input_tokens + output_tokens,
                        )
                        final.finish_reason = finish_reason or FinishReason.STOP
                        yield final
                    elif kind == "error":
                        error = event.get("error") or {}
                        message = str(error.get("message") or "stream error")
                        _, status = classify_message(f"{error.get('type', '')} {message}")
                        raise error_for_status(
                            status,
                            f"Claude stream error: {message}",
                            provider="claude",
                            phase="stream",
                            model=self.config.model,
                        )
        except (asyncio.CancelledError, APIError):
            raise
        except Exception as e:
            raise self._wrap_error(e, phase="stream", message="Claude stream failed") from e

    def _delta(self, parts: list[Part], *, model: str) -> UnifiedResponse:
        return UnifiedResponse(
            id=self._generate_response_id(),
            provider=AIProvider.CLAUDE,
            model=model,
            content=[Content(role="model", parts=parts)] if parts else [],
        )

    async def validate_config(self) -> bool:
        return bool(self.api_key) and bool(self.config.model) and bool(self.endpoint)

    async def test_connection(self) -> bool:
        """Send a one-token request; any failure means unreachable."""
        client = self._get_client()
        try:
            response = await client.post(
                self.endpoint,
                headers=self._headers,
                json={
                    "model": self.config.model,
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "Hi"}],
                },
            )
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as e:
            logger.debug("Claude connection test failed: %s", e)
            return False
        return response.status_code < 400

    async def aclose(self) -> None:
        """Close the HTTP client when this adapter created it."""
        client = self._client
        if client is None or not self._owns_client:
            return
        self._client = None
        await client.aclose()

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse_response(self, payload: dict[str, Any], *, model: str) -> UnifiedResponse:
        parts: list[Part] = []
        for block in payload.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                parts.append(Part(text=block["text"]))
            elif block.get("type") == "tool_use":
                parts.append(
                    Part(
                        function_call=FunctionCall(
                            name=str(block.get("name", "")),
                            args=dict(block.get("input") or {}),
                            id=block.get("id"),
                        )
                    )
                )

        usage_raw = payload.get("usage") or {}
        input_tokens = int(usage_raw.get("input_tokens", 0) or 0)
        output_tokens = int(usage_raw.get("output_tokens", 0) or 0)
        return UnifiedResponse(
            id=payload.get("id") or self._generate_response_id(),
            provider=AIProvider.CLAUDE,
            model=payload.get("model") or model,
            content=[Content(role="model", parts=parts)] if parts else [],
            usage_metadata=UsageMetadata(
                prompt_token_count=input_tokens,
                candidates_token_count=output_tokens,
                total_token_count=input_tokens + output_tokens,
            ),
            finish_reason=_normalize_stop_reason(payload.get("stop_reason")),
        )


def _tool_part(pending: dict[str, Any]) -> Part:
    try:
        args = json.loads(pending["json"]) if pending["json"] else {}
    except json.JSONDecodeError:
        logger.warning("Discarding malformed tool input for %s", pending["name"])
        args = {}
    return Part(
        function_call=FunctionCall(
            name=pending["name"],
            args=args if isinstance(args, dict) else {},
            id=pending["id"],
        )
    )
