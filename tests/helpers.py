"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off adapter subclasses as coverage expands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
from typing import TYPE_CHECKING, Any

import httpx

from agentmux.provider_factory import ProviderFactory
from agentmux.providers.models import (
    AIProvider,
    Content,
    Part,
    UnifiedRequest,
    UnifiedResponse,
)
from tests.conftest import FakeProviderClient

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from agentmux.config import ProviderConfig
    from agentmux.retry import RetryPolicy


@dataclass
class ScriptedClient(FakeProviderClient):
    """FakeProviderClient that plays back a script of results/exceptions.

    Each ``generate_content`` call pops one item. Each stream pops one item
    too: a list of deltas (an exception inside the list is raised at that
    point) or a bare exception raised before the first delta.
    """

    script: list[Any] = field(default_factory=list)

    async def generate_content(self, request: UnifiedRequest) -> UnifiedResponse:
        if not self.script:
            return await super().generate_content(request)
        self.requests.append(request)
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return text_response(item, model=request.model)
        return item

    async def _stream(self, request: UnifiedRequest) -> AsyncIterator[UnifiedResponse]:
        if not self.script:
            async for delta in super()._stream(request):
                yield delta
            return
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        for delta in item:
            if isinstance(delta, BaseException):
                raise delta
            if isinstance(delta, str):
                delta = text_response(delta, model=request.model)
            yield delta


@dataclass
class GateClient(FakeProviderClient):
    """FakeProviderClient whose calls block until ``release`` is set."""

    started: asyncio.Event = field(default_factory=asyncio.Event)
    release: asyncio.Event = field(default_factory=asyncio.Event)

    async def generate_content(self, request: UnifiedRequest) -> UnifiedResponse:
        self.started.set()
        await self.release.wait()
        return await super().generate_content(request)

    async def _stream(self, request: UnifiedRequest) -> AsyncIterator[UnifiedResponse]:
        yield text_response("first", model=request.model)
        self.started.set()
        await self.release.wait()
        yield text_response("second", model=request.model)


class FakeProviderFactory(ProviderFactory):
    """ProviderFactory that builds FakeProviderClient doubles.

    ``client_kwargs`` are passed to every client it builds, e.g.
    ``connected=False`` to simulate an unreachable provider.
    """

    def __init__(self, **client_kwargs: Any) -> None:
        super().__init__()
        self.client_kwargs = client_kwargs
        self.built: list[FakeProviderClient] = []

    def build_client(  # type: ignore[override]
        self, config: ProviderConfig, *, retry_policy: RetryPolicy | None = None
    ) -> FakeProviderClient:
        del retry_policy
        client = FakeProviderClient(config=config, **self.client_kwargs)
        self.built.append(client)
        return client


def text_response(text: str, *, model: str = "fake-model") -> UnifiedResponse:
    return UnifiedResponse(
        id="scripted",
        provider=AIProvider.GEMINI,
        model=model,
        content=[Content(role="model", parts=[Part(text=text)])],
    )


# =============================================================================
# HTTP doubles
# =============================================================================


@dataclass
class RecordingTransport:
    """httpx handler that replays scripted responses and records requests."""

    responses: list[httpx.Response | Exception]
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def json_bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.content]


def mock_http_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def ndjson_body(*lines: dict[str, Any] | str) -> bytes:
    """Join dicts (serialized) and raw strings into an NDJSON payload."""
    return "".join(
        (line if isinstance(line, str) else json.dumps(line)) + "\n" for line in lines
    ).encode()


def sse_body(*events: dict[str, Any]) -> bytes:
    """Serialize events the way the Anthropic Messages API streams them."""
    return "".join(
        f"event: {e.get('type', 'message')}\ndata: {json.dumps(e)}\n\n" for e in events
    ).encode()
