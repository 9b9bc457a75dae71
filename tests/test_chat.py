"""MultiProviderChat: routing to the active session across providers."""

from __future__ import annotations

import pytest

from agentmux.agent_manager import AgentManager
from agentmux.chat import ActiveProviderInfo, MultiProviderChat
from agentmux.config import default_provider_config
from agentmux.errors import ChatSessionError
from agentmux.events import ChatEventBus, ChatStreamEventType, ProviderSwitchedEvent
from agentmux.providers.base import ProviderCapabilities
from agentmux.providers.models import AIProvider, FunctionDeclaration, Tool, user_content
from agentmux.sessions import GenerationConfig
from tests.helpers import FakeProviderFactory

pytestmark = pytest.mark.unit

READ_FILE = Tool([FunctionDeclaration(name="read_file")])


@pytest.fixture
def bus() -> ChatEventBus:
    return ChatEventBus()


@pytest.fixture
def chat(bus: ChatEventBus) -> MultiProviderChat:
    manager = AgentManager(
        provider_factory=FakeProviderFactory(),
        provider_defaults={
            AIProvider.GEMINI: default_provider_config("gemini", api_key="test-key"),
            AIProvider.CLAUDE: default_provider_config("claude", api_key="test-key"),
        },
    )
    return MultiProviderChat(manager, event_bus=bus)


def _switches(bus: ChatEventBus) -> list[ProviderSwitchedEvent]:
    return [e for e in bus.get_event_history() if isinstance(e, ProviderSwitchedEvent)]


@pytest.mark.asyncio
async def test_calls_without_an_active_session_fail(chat: MultiProviderChat) -> None:
    with pytest.raises(ChatSessionError) as exc_info:
        await chat.send_message("hi")
    assert exc_info.value.code == "NO_ACTIVE_SESSION"

    with pytest.raises(ChatSessionError):
        chat.send_message_stream("hi")
    with pytest.raises(ChatSessionError):
        chat.get_history()
    assert chat.is_multi_provider_mode() is False
    assert chat.get_active_provider_info() == ActiveProviderInfo()


@pytest.mark.asyncio
async def test_quick_session_becomes_active_and_announces_the_switch(
    chat: MultiProviderChat, bus: ChatEventBus
) -> None:
    session_id = await chat.create_quick_session("gemini")

    info = chat.get_active_provider_info()
    assert info.session_id == session_id
    assert info.provider is AIProvider.GEMINI
    (switch,) = _switches(bus)
    assert switch.from_provider is None
    assert switch.to_provider is AIProvider.GEMINI
    assert switch.reason == "quick session"


@pytest.mark.asyncio
async def test_switch_event_only_when_the_provider_changes(
    chat: MultiProviderChat, bus: ChatEventBus
) -> None:
    first = await chat.create_quick_session("gemini")
    await chat.create_quick_session("gemini")
    claude = await chat.create_quick_session("claude")
    await chat.switch_to_provider(first, reason="cheaper")

    assert [(e.from_provider, e.to_provider, e.reason) for e in _switches(bus)] == [
        (None, AIProvider.GEMINI, "quick session"),
        (AIProvider.GEMINI, AIProvider.CLAUDE, "quick session"),
        (AIProvider.CLAUDE, AIProvider.GEMINI, "cheaper"),
    ]
    assert chat.get_active_provider_info().session_id == first
    assert chat.agent_manager.get_session(claude) is not None


@pytest.mark.asyncio
async def test_send_message_routes_to_the_active_session(chat: MultiProviderChat) -> None:
    await chat.create_quick_session("gemini")
    claude = await chat.create_quick_session("claude")

    response = await chat.send_message("hi")

    assert response.text == "ok:hi"
    session = chat.agent_manager.get_session(claude)
    assert session is not None
    assert len(session.get_history()) == 2
    assert chat.get_history() == session.get_history()


@pytest.mark.asyncio
async def test_tools_follow_the_user_across_providers(chat: MultiProviderChat) -> None:
    await chat.create_quick_session("gemini")
    chat.set_tools([READ_FILE])
    claude = await chat.create_quick_session("claude")
    session = chat.agent_manager.get_session(claude)
    assert session is not None

    await chat.send_message("hi")
    override = Tool([FunctionDeclaration(name="grep_files")])
    await chat.send_message("again", GenerationConfig(tools=[override]))

    assert session.tools == [READ_FILE]
    first, second = session.client.requests
    assert first.tools == [READ_FILE]
    assert second.tools == [override]


@pytest.mark.asyncio
async def test_stream_deltas(chat: MultiProviderChat) -> None:
    await chat.create_quick_session("gemini")

    chunks = [c async for c in chat.send_message_stream("hello")]

    assert "".join(c.text for c in chunks) == "ok:hello"
    usage = chat.get_final_usage_metadata(chunks)
    assert usage is not None
    assert usage.total_token_count == 5


@pytest.mark.asyncio
async def test_stream_events_are_published_to_the_bus(
    chat: MultiProviderChat, bus: ChatEventBus
) -> None:
    await chat.create_quick_session("gemini")
    published: list = []
    bus.on_any(published.append)

    events = [e async for e in chat.stream_events("hello")]

    assert events == published
    assert events[0].type is ChatStreamEventType.START
    assert events[-1].type is ChatStreamEventType.END


@pytest.mark.asyncio
async def test_history_passthrough(chat: MultiProviderChat) -> None:
    await chat.create_quick_session("gemini")

    chat.set_history([user_content("seed")])
    chat.add_history(user_content("more"))
    assert [c.text for c in chat.get_history()] == ["seed", "more"]

    chat.clear_history()
    assert chat.get_history() == []


@pytest.mark.asyncio
async def test_stats_come_from_the_manager(chat: MultiProviderChat) -> None:
    await chat.create_quick_session("gemini")
    await chat.create_quick_session("claude")

    stats = chat.get_stats()

    assert stats.total_sessions == 2
    assert stats.sessions_by_provider[AIProvider.CLAUDE] == 1


@pytest.mark.asyncio
async def test_remembered_tools_are_withheld_from_providers_without_tools() -> None:
    no_tools = ProviderCapabilities(
        supports_streaming=True,
        supports_tools=False,
        supports_images=False,
        supports_system_prompts=True,
        max_context_length=8192,
    )
    factory = FakeProviderFactory(_capabilities=no_tools)
    chat = MultiProviderChat(AgentManager(provider_factory=factory))
    chat.set_tools([READ_FILE])

    session_id = await chat.create_quick_session("ollama", "llama3")
    response = await chat.send_message("hi")

    assert response.text == "ok:hi"
    session = chat.agent_manager.get_session(session_id)
    assert session is not None
    assert session.tools == []
    (request,) = factory.built[0].requests
    assert request.tools is None
