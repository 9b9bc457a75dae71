"""Provider characterization tests.

These tests verify the internal request/response transformations for each
adapter. They use mock transports and fake SDK clients to characterize the
exact shapes sent to provider APIs without making real network calls.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from agentmux.config import ProviderConfig
from agentmux.errors import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    ContextLengthExceededError,
    ModelNotFoundError,
    ProviderConnectionError,
    RateLimitError,
    RequestTimeoutError,
    UnsupportedFeatureError,
)
from agentmux.providers._errors import (
    classify_message,
    extract_retry_after_s,
    wrap_provider_error,
)
from agentmux.providers.claude import ClaudeProviderClient
from agentmux.providers.gemini import GeminiProviderClient
from agentmux.providers.models import (
    Content,
    FinishReason,
    FunctionCall,
    FunctionDeclaration,
    Part,
    Tool,
    UnifiedRequest,
    user_content,
)
from agentmux.providers.ollama import OllamaProviderClient, model_matches, normalize_endpoint
from agentmux.retry import RetryPolicy
from tests.conftest import CLAUDE_MODEL, GEMINI_MODEL, OLLAMA_MODEL
from tests.helpers import RecordingTransport, ndjson_body, sse_body

pytestmark = pytest.mark.contract

FAST_RETRY = RetryPolicy(max_retries=3, base_delay_s=0, jitter_ratio=0)
NO_RETRY = RetryPolicy(max_retries=0)


def _claude(transport: RecordingTransport, **kwargs: Any) -> ClaudeProviderClient:
    config = ProviderConfig(provider="claude", model=CLAUDE_MODEL, api_key="test-key", **kwargs)
    return ClaudeProviderClient(config, retry_policy=FAST_RETRY, http_client=transport.client())


def _ollama(transport: RecordingTransport) -> OllamaProviderClient:
    config = ProviderConfig(provider="ollama", model=OLLAMA_MODEL, endpoint="http://ollama.test")
    return OllamaProviderClient(config, retry_policy=FAST_RETRY, http_client=transport.client())


def _gemini() -> GeminiProviderClient:
    adapter = GeminiProviderClient(
        ProviderConfig(provider="gemini", model=GEMINI_MODEL, api_key="test-key"),
        retry_policy=NO_RETRY,
    )
    adapter._client = MagicMock()
    return adapter


def _request(model: str, text: str = "Hi", **kwargs: Any) -> UnifiedRequest:
    return UnifiedRequest(model=model, contents=[user_content(text)], **kwargs)


def _claude_message(text: str = "Hello!") -> dict[str, Any]:
    return {
        "id": "msg_1",
        "model": CLAUDE_MODEL,
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 9, "output_tokens": 3},
    }


# =============================================================================
# Provider Error Mapping (Contract)
# =============================================================================


def test_wrap_provider_error_extracts_status_and_retry_after_from_response_headers() -> None:
    """Native HTTP errors should map into APIError with structured retry metadata."""

    class _Resp:
        def __init__(self) -> None:
            self.status_code = 429
            self.headers = {"Retry-After": "2"}

    class _SdkError(Exception):
        def __init__(self) -> None:
            super().__init__("rate limited")
            self.response = _Resp()

    err = wrap_provider_error(_SdkError(), provider="claude", phase="generate")

    assert isinstance(err, RateLimitError)
    assert err.status_code == 429
    assert err.retry_after_s == 2.0
    assert err.retryable is True
    assert err.provider == "claude"
    assert err.phase == "generate"
    assert "429" in str(err)


def test_wrap_provider_error_reads_google_retry_info() -> None:
    class _ClientError(Exception):
        code = 429
        details = {
            "error": {
                "details": [
                    {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "8s"}
                ]
            }
        }

    assert extract_retry_after_s(_ClientError("quota")) == 8.0


def test_wrap_provider_error_enriches_existing_api_error_without_clobbering() -> None:
    base = APIError("bad request", retryable=False, status_code=400)

    wrapped = wrap_provider_error(base, provider="gemini", phase="generate")

    assert wrapped is base
    assert wrapped.status_code == 400
    assert wrapped.provider == "gemini"


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (httpx.ConnectError("refused"), ProviderConnectionError),
        (httpx.ReadTimeout("slow"), RequestTimeoutError),
        (RuntimeError("401 Unauthorized"), AuthenticationError),
        (RuntimeError("model not found"), ModelNotFoundError),
    ],
)
def test_wrap_provider_error_classifies_without_status(
    exc: Exception, expected: type[APIError]
) -> None:
    assert isinstance(wrap_provider_error(exc, provider="ollama", phase="generate"), expected)


def test_unclassified_errors_default_to_server_error() -> None:
    err = wrap_provider_error(RuntimeError("kaboom"), provider="gemini", phase="generate")

    assert type(err) is APIError
    assert err.status_code == 500
    assert err.code == "UNKNOWN_ERROR"


def test_classify_message_checks_in_priority_order() -> None:
    assert classify_message("401 and 429 at once") == ("AUTHENTICATION_ERROR", 401)
    assert classify_message("Rate limit exceeded") == ("RATE_LIMIT_ERROR", 429)
    assert classify_message("Forbidden") == ("FORBIDDEN_ERROR", 403)
    assert classify_message("weird") == ("UNKNOWN_ERROR", 500)


# =============================================================================
# Pre-flight Validation (Contract)
# =============================================================================


def test_disabled_config_fails_construction() -> None:
    config = ProviderConfig(provider="claude", model=CLAUDE_MODEL, api_key="k", enabled=False)
    with pytest.raises(ConfigurationError, match="disabled"):
        ClaudeProviderClient(config)


def test_missing_credentials_fail_construction() -> None:
    with pytest.raises(AuthenticationError):
        ClaudeProviderClient(ProviderConfig(provider="claude", model=CLAUDE_MODEL))
    with pytest.raises(AuthenticationError):
        GeminiProviderClient(ProviderConfig(provider="gemini", model=GEMINI_MODEL))


@pytest.mark.asyncio
async def test_unknown_model_is_rejected_before_the_network() -> None:
    transport = RecordingTransport([httpx.Response(200, json=_claude_message())])
    adapter = _claude(transport)

    with pytest.raises(UnsupportedFeatureError, match="not supported by claude"):
        await adapter.generate_content(_request("claude-9"))

    assert transport.requests == []


@pytest.mark.asyncio
async def test_tools_are_rejected_for_ollama_before_the_network() -> None:
    transport = RecordingTransport([httpx.Response(200, json={})])
    adapter = _ollama(transport)
    tool = Tool([FunctionDeclaration(name="read_file")])

    with pytest.raises(UnsupportedFeatureError, match="does not support tools"):
        adapter.generate_content_stream(_request(OLLAMA_MODEL, tools=[tool], stream=True))

    assert transport.requests == []


@pytest.mark.asyncio
async def test_oversized_prompt_is_rejected_before_the_network() -> None:
    transport = RecordingTransport([httpx.Response(200, json={})])
    adapter = _ollama(transport)

    with pytest.raises(ContextLengthExceededError):
        await adapter.generate_content(_request(OLLAMA_MODEL, "x" * 40_000))

    assert transport.requests == []


def test_estimate_tokens_uses_provider_ratio() -> None:
    adapter = _claude(RecordingTransport([]))
    assert adapter.estimate_tokens([user_content("x" * 35)]) == 10


# =============================================================================
# Claude (Contract)
# =============================================================================


def test_claude_extracts_leading_system_prompt_and_merges_roles() -> None:
    system, messages = ClaudeProviderClient._build_messages(
        [
            user_content("You are a careful reviewer."),
            user_content("Review this"),
            user_content("and this"),
            Content(role="model", parts=[Part(text="Looks fine")]),
        ]
    )

    assert system == "You are a careful reviewer."
    assert messages == [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "Review this"},
                {"type": "text", "text": "and this"},
            ],
        },
        {"role": "assistant", "content": [{"type": "text", "text": "Looks fine"}]},
    ]


def test_claude_keeps_a_lone_turn_as_a_message() -> None:
    system, messages = ClaudeProviderClient._build_messages([user_content("You are here?")])
    assert system is None
    assert messages[0]["role"] == "user"


@pytest.mark.asyncio
async def test_claude_generate_shapes_request_and_parses_reply() -> None:
    transport = RecordingTransport([httpx.Response(200, json=_claude_message())])
    adapter = _claude(transport, max_tokens=1024)
    tool = Tool([FunctionDeclaration(name="read_file", description="Read a file")])

    response = await adapter.generate_content(
        _request(CLAUDE_MODEL, temperature=0.2, tools=[tool], system_instruction="Be brief.")
    )

    (sent,) = transport.requests
    assert sent.headers["x-api-key"] == "test-key"
    assert sent.headers["anthropic-version"] == "2023-06-01"
    (body,) = transport.json_bodies()
    assert body["max_tokens"] == 1024
    assert body["temperature"] == 0.2
    assert body["system"] == "Be brief."
    assert body["tools"] == [
        {
            "name": "read_file",
            "description": "Read a file",
            "input_schema": {"type": "object", "properties": {}},
        }
    ]
    assert response.text == "Hello!"
    assert response.finish_reason is FinishReason.STOP
    assert response.usage_metadata is not None
    assert response.usage_metadata.total_token_count == 12


@pytest.mark.asyncio
async def test_claude_retries_server_errors_then_succeeds() -> None:
    transport = RecordingTransport(
        [
            httpx.Response(500, json={"error": {"message": "overloaded"}}),
            httpx.Response(200, json=_claude_message("recovered")),
        ]
    )
    adapter = _claude(transport)

    response = await adapter.generate_content(_request(CLAUDE_MODEL))

    assert response.text == "recovered"
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_claude_unauthorized_is_never_retried() -> None:
    transport = RecordingTransport(
        [
            httpx.Response(401, json={"error": {"message": "invalid x-api-key"}}),
            httpx.Response(200, json=_claude_message()),
        ]
    )
    adapter = _claude(transport)

    with pytest.raises(AuthenticationError) as exc_info:
        await adapter.generate_content(_request(CLAUDE_MODEL))

    assert len(transport.requests) == 1
    assert exc_info.value.status_code == 401
    assert "ANTHROPIC_API_KEY" in (exc_info.value.hint or "")
    assert "test-key" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_claude_rate_limit_carries_retry_after() -> None:
    transport = RecordingTransport(
        [httpx.Response(429, headers={"retry-after": "3"}, json={"error": {"message": "slow"}})]
    )
    config = ProviderConfig(provider="claude", model=CLAUDE_MODEL, api_key="k")
    adapter = ClaudeProviderClient(config, retry_policy=NO_RETRY, http_client=transport.client())

    with pytest.raises(RateLimitError) as exc_info:
        await adapter.generate_content(_request(CLAUDE_MODEL))

    assert exc_info.value.retry_after_s == 3.0


@pytest.mark.asyncio
async def test_claude_stream_yields_text_tool_calls_and_final_usage() -> None:
    body = sse_body(
        {
            "type": "message_start",
            "message": {"model": CLAUDE_MODEL, "usage": {"input_tokens": 10}},
        },
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
        {"type": "content_block_stop", "index": 0},
        {
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "read_file"},
        },
        {
            "type": "content_block_delta",
            "index": 1,
            "delta": {"type": "input_json_delta", "partial_json": '{"path": '},
        },
        {
            "type": "content_block_delta",
            "index": 1,
            "delta": {"type": "input_json_delta", "partial_json": '"a.txt"}'},
        },
        {"type": "content_block_stop", "index": 1},
        {
            "type": "message_delta",
            "delta": {"stop_reason": "tool_use"},
            "usage": {"output_tokens": 7},
        },
        {"type": "message_stop"},
    )
    transport = RecordingTransport([httpx.Response(200, content=body)])
    adapter = _claude(transport)

    deltas = [d async for d in adapter.generate_content_stream(_request(CLAUDE_MODEL, stream=True))]

    assert [d.text for d in deltas[:2]] == ["Hel", "lo"]
    assert deltas[2].function_calls == [
        FunctionCall(name="read_file", args={"path": "a.txt"}, id="toolu_1")
    ]
    final = deltas[-1]
    assert final.content == []
    assert final.usage_metadata is not None
    assert final.usage_metadata.total_token_count == 17
    assert final.finish_reason is FinishReason.STOP
    assert transport.json_bodies()[0]["stream"] is True


@pytest.mark.asyncio
async def test_claude_test_connection_reports_unreachable() -> None:
    transport = RecordingTransport([httpx.ConnectError("refused")])
    assert await _claude(transport).test_connection() is False


@pytest.mark.asyncio
async def test_claude_does_not_close_an_injected_client() -> None:
    transport = RecordingTransport([])
    client = transport.client()
    config = ProviderConfig(provider="claude", model=CLAUDE_MODEL, api_key="k")
    adapter = ClaudeProviderClient(config, http_client=client)

    await adapter.aclose()

    assert client.is_closed is False
    await client.aclose()


# =============================================================================
# Ollama (Contract)
# =============================================================================


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("http://localhost:11434", "http://localhost:11434/api"),
        ("http://localhost:11434/", "http://localhost:11434/api"),
        ("http://localhost:11434/api", "http://localhost:11434/api"),
        ("http://localhost:11434/api/", "http://localhost:11434/api"),
    ],
)
def test_normalize_endpoint(raw: str, expected: str) -> None:
    assert normalize_endpoint(raw) == expected


def test_model_matches_latest_tag() -> None:
    assert model_matches("llama2:latest", "llama2")
    assert model_matches("llama2", "llama2")
    assert not model_matches("llama2:13b", "llama2")


@pytest.mark.asyncio
async def test_ollama_generate_shapes_request_and_parses_reply() -> None:
    transport = RecordingTransport(
        [
            httpx.Response(
                200,
                json={
                    "model": OLLAMA_MODEL,
                    "message": {"role": "assistant", "content": "Hi!"},
                    "done": True,
                    "prompt_eval_count": 4,
                    "eval_count": 2,
                },
            )
        ]
    )
    adapter = _ollama(transport)

    response = await adapter.generate_content(
        _request(OLLAMA_MODEL, temperature=0.1, max_tokens=64, system_instruction="Be nice.")
    )

    assert str(transport.requests[0].url) == "http://ollama.test/api/chat"
    (body,) = transport.json_bodies()
    assert body["stream"] is False
    assert body["messages"][0] == {"role": "system", "content": "Be nice."}
    assert body["messages"][1] == {"role": "user", "content": "Hi"}
    assert body["options"] == {"temperature": 0.1, "num_predict": 64}
    assert response.text == "Hi!"
    assert response.usage_metadata is not None
    assert response.usage_metadata.total_token_count == 6


@pytest.mark.asyncio
async def test_ollama_stream_skips_malformed_lines() -> None:
    body = ndjson_body(
        {"model": OLLAMA_MODEL, "message": {"role": "assistant", "content": "Hel"}, "done": False},
        '{"model": "llama2", "message": {"role": "assistant", "content":',
        {
            "model": OLLAMA_MODEL,
            "message": {"role": "assistant", "content": "lo"},
            "done": True,
            "prompt_eval_count": 5,
            "eval_count": 2,
        },
    )
    transport = RecordingTransport([httpx.Response(200, content=body)])

    deltas = [
        d
        async for d in _ollama(transport).generate_content_stream(
            _request(OLLAMA_MODEL, stream=True)
        )
    ]

    assert [d.text for d in deltas] == ["Hel", "lo", ""]
    assert deltas[-1].usage_metadata is not None
    assert deltas[-1].usage_metadata.total_token_count == 7


@pytest.mark.asyncio
async def test_ollama_stream_error_chunk_raises() -> None:
    body = ndjson_body({"error": "model 'llama2' not found"})
    transport = RecordingTransport([httpx.Response(200, content=body)])

    with pytest.raises(APIError, match="not found"):
        async for _ in _ollama(transport).generate_content_stream(
            _request(OLLAMA_MODEL, stream=True)
        ):
            pass


@pytest.mark.asyncio
async def test_ollama_model_listing_and_availability() -> None:
    tags = {"models": [{"name": "llama2:latest"}, {"name": "mistral:7b"}]}
    transport = RecordingTransport(
        [httpx.Response(200, json=tags), httpx.Response(200, json=tags)]
    )
    adapter = _ollama(transport)

    assert await adapter.list_models() == ["llama2:latest", "mistral:7b"]
    assert await adapter.is_model_available("llama2") is True
    assert str(transport.requests[0].url) == "http://ollama.test/api/tags"


@pytest.mark.asyncio
async def test_ollama_unreachable_daemon() -> None:
    transport = RecordingTransport([httpx.ConnectError("refused")] * 3)
    adapter = _ollama(transport)

    assert await adapter.test_connection() is False
    assert await adapter.validate_config() is False
    assert await adapter.get_model_info(OLLAMA_MODEL) is None


@pytest.mark.asyncio
async def test_ollama_embeddings_post_one_request_per_text() -> None:
    transport = RecordingTransport(
        [
            httpx.Response(200, json={"embedding": [0.1, 0.2]}),
            httpx.Response(200, json={"embedding": [0.3]}),
        ]
    )

    vectors = await _ollama(transport).embed_content(["a", "b"])

    assert vectors == [[0.1, 0.2], [0.3]]
    assert [b["prompt"] for b in transport.json_bodies()] == ["a", "b"]


# =============================================================================
# Gemini (Contract)
# =============================================================================


def _gemini_response(
    text: str, *, finish: str | None = "STOP", usage: bool = True
) -> SimpleNamespace:
    return SimpleNamespace(
        candidates=[
            SimpleNamespace(
                finish_reason=finish,
                content=SimpleNamespace(parts=[SimpleNamespace(text=text)]),
            )
        ],
        usage_metadata=SimpleNamespace(
            prompt_token_count=4, candidates_token_count=2, total_token_count=6
        )
        if usage
        else None,
        response_id="resp-1",
        model_version=GEMINI_MODEL,
    )


async def _aiter(items):
    for item in items:
        yield item


@pytest.mark.asyncio
async def test_gemini_generate_calls_sdk_and_parses_reply() -> None:
    adapter = _gemini()
    generate = AsyncMock(return_value=_gemini_response("Hi there"))
    adapter._client.aio.models.generate_content = generate

    response = await adapter.generate_content(
        _request(GEMINI_MODEL, temperature=0.3, system_instruction="Be brief.")
    )

    kwargs = generate.call_args.kwargs
    assert kwargs["model"] == GEMINI_MODEL
    assert kwargs["contents"][0].role == "user"
    assert kwargs["contents"][0].parts[0].text == "Hi"
    assert kwargs["config"].temperature == 0.3
    assert kwargs["config"].system_instruction == "Be brief."
    assert response.id == "resp-1"
    assert response.text == "Hi there"
    assert response.finish_reason is FinishReason.STOP
    assert response.usage_metadata is not None
    assert response.usage_metadata.total_token_count == 6


@pytest.mark.asyncio
async def test_gemini_sets_json_mode_when_schema_is_given() -> None:
    adapter = _gemini()
    generate = AsyncMock(return_value=_gemini_response("{}"))
    adapter._client.aio.models.generate_content = generate
    schema = {"type": "object", "properties": {"ok": {"type": "boolean"}}}

    await adapter.generate_content(_request(GEMINI_MODEL, response_schema=schema))

    config = generate.call_args.kwargs["config"]
    assert config.response_mime_type == "application/json"
    assert config.response_json_schema == schema


def test_gemini_parses_function_calls_and_thoughts() -> None:
    adapter = _gemini()
    raw = SimpleNamespace(
        candidates=[
            SimpleNamespace(
                finish_reason=None,
                content=SimpleNamespace(
                    parts=[
                        SimpleNamespace(text="**Planning** look at files", thought=True),
                        SimpleNamespace(
                            function_call=SimpleNamespace(name="read_file", args={"path": "x"})
                        ),
                    ]
                ),
            )
        ]
    )

    response = adapter._parse_response(raw, model=GEMINI_MODEL)

    thought, call = response.content[0].parts
    assert thought.thought is True
    assert response.text == ""
    assert call.function_call is not None
    assert call.function_call.name == "read_file"
    assert call.function_call.id is not None
    assert response.usage_metadata is None


@pytest.mark.asyncio
async def test_gemini_stream_yields_parsed_chunks() -> None:
    adapter = _gemini()
    adapter._client.aio.models.generate_content_stream = AsyncMock(
        return_value=_aiter(
            [
                _gemini_response("Hel", finish=None, usage=False),
                _gemini_response("lo", finish="STOP"),
            ]
        )
    )

    deltas = [d async for d in adapter.generate_content_stream(_request(GEMINI_MODEL, stream=True))]

    assert [d.text for d in deltas] == ["Hel", "lo"]
    assert deltas[-1].usage_metadata is not None


@pytest.mark.asyncio
async def test_gemini_maps_sdk_errors_with_retry_info() -> None:
    class _ClientError(Exception):
        code = 429
        details = {
            "error": {
                "details": [
                    {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "8s"}
                ]
            }
        }

    adapter = _gemini()
    adapter._client.aio.models.generate_content = AsyncMock(side_effect=_ClientError("quota"))

    with pytest.raises(RateLimitError) as exc_info:
        await adapter.generate_content(_request(GEMINI_MODEL))

    assert exc_info.value.retry_after_s == 8.0
    assert exc_info.value.provider == "gemini"


@pytest.mark.asyncio
async def test_gemini_count_tokens_falls_back_to_estimate() -> None:
    adapter = _gemini()
    counted = SimpleNamespace(total_tokens=42)
    adapter._client.aio.models.count_tokens = AsyncMock(return_value=counted)
    assert await adapter.count_tokens([user_content("hello")]) == 42

    adapter._client.aio.models.count_tokens = AsyncMock(side_effect=RuntimeError("offline"))
    assert await adapter.count_tokens([user_content("x" * 40)]) == 10


@pytest.mark.asyncio
async def test_gemini_test_connection_swallows_failures() -> None:
    adapter = _gemini()
    adapter._client.aio.models.count_tokens = AsyncMock(side_effect=RuntimeError("offline"))
    assert await adapter.test_connection() is False
