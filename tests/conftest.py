"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, marker registration,
and automatic API test skipping. All fixtures here are autouse unless noted.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
import logging
import math
import os
from typing import TYPE_CHECKING

import pytest

from agentmux.config import ProviderConfig
from agentmux.errors import ConfigurationError
from agentmux.providers.base import ProviderCapabilities
from agentmux.providers.models import (
    AIProvider,
    Content,
    FinishReason,
    Part,
    UnifiedRequest,
    UnifiedResponse,
    UsageMetadata,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

GEMINI_MODEL = "gemini-2.0-flash"
CLAUDE_MODEL = "claude-3-5-sonnet-20241022"
OLLAMA_MODEL = "llama2"

# =============================================================================
# Test Doubles
# =============================================================================


def _last_user_text(request: UnifiedRequest) -> str:
    for content in reversed(request.contents):
        if content.role == "user":
            return content.text
    return ""


@dataclass
class FakeProviderClient:
    """Provider adapter double that answers ``ok:<prompt>`` without a network.

    Streams deliver the reply in two text deltas followed by a usage-only
    delta, mirroring how the real adapters end a stream.
    """

    config: ProviderConfig = field(
        default_factory=lambda: ProviderConfig(
            provider=AIProvider.GEMINI, model=GEMINI_MODEL, api_key="test-key"
        )
    )
    valid: bool = True
    connected: bool = True
    closed: bool = False
    requests: list[UnifiedRequest] = field(default_factory=list)
    _capabilities: ProviderCapabilities = field(
        default_factory=lambda: ProviderCapabilities(
            supports_streaming=True,
            supports_tools=True,
            supports_images=True,
            supports_system_prompts=True,
            max_context_length=100_000,
        )
    )

    def __post_init__(self) -> None:
        if not self.config.enabled:
            raise ConfigurationError(f"Provider {self.config.provider.value} is disabled")

    @property
    def provider(self) -> AIProvider:
        return self.config.provider

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    def estimate_tokens(self, contents: list[Content]) -> int:
        chars = sum(len(p.text or "") for c in contents for p in c.parts)
        return math.ceil(chars / 4)

    def reply_text(self, request: UnifiedRequest) -> str:
        return f"ok:{_last_user_text(request)}"

    async def generate_content(self, request: UnifiedRequest) -> UnifiedResponse:
        self.requests.append(request)
        return UnifiedResponse(
            id=f"resp-{len(self.requests)}",
            provider=self.provider,
            model=request.model,
            content=[Content(role="model", parts=[Part(text=self.reply_text(request))])],
            usage_metadata=UsageMetadata(3, 2, 5),
            finish_reason=FinishReason.STOP,
        )

    def generate_content_stream(self, request: UnifiedRequest) -> AsyncIterator[UnifiedResponse]:
        self.requests.append(request)
        return self._stream(request)

    async def _stream(self, request: UnifiedRequest) -> AsyncIterator[UnifiedResponse]:
        text = self.reply_text(request)
        for i, piece in enumerate((text[:3], text[3:])):
            yield UnifiedResponse(
                id=f"chunk-{i}",
                provider=self.provider,
                model=request.model,
                content=[Content(role="model", parts=[Part(text=piece)])],
            )
        yield UnifiedResponse(
            id="chunk-final",
            provider=self.provider,
            model=request.model,
            usage_metadata=UsageMetadata(3, 2, 5),
            finish_reason=FinishReason.STOP,
        )

    async def count_tokens(self, contents: list[Content]) -> int:
        return self.estimate_tokens(contents)

    async def validate_config(self) -> bool:
        return self.valid

    async def get_available_models(self) -> list[str]:
        return [self.config.model]

    async def test_connection(self) -> bool:
        return self.connected

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears credential and endpoint variables for every provider to prevent
    test pollution.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(("GEMINI_", "GOOGLE_", "ANTHROPIC_", "CLAUDE_", "OLLAMA_")):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("google_genai").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# Fixtures (opt-in)
# =============================================================================


@pytest.fixture
def fake_client() -> FakeProviderClient:
    return FakeProviderClient()


@pytest.fixture
def gemini_api_key():
    """Return GEMINI_API_KEY or skip the test if unavailable."""
    key = os.getenv("GEMINI_API_KEY")
    if not key:
        pytest.skip("GEMINI_API_KEY not set")
    return key


@pytest.fixture
def anthropic_api_key():
    """Return ANTHROPIC_API_KEY or skip the test if unavailable."""
    key = os.getenv("ANTHROPIC_API_KEY")
    if not key:
        pytest.skip("ANTHROPIC_API_KEY not set")
    return key
