"""Single entry point that routes chat calls to the manager's active session."""

from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING

from agentmux.errors import ChatSessionError
from agentmux.events.stream import session_events
from agentmux.events.types import ProviderSwitchedEvent
from agentmux.sessions.base import ChatSession

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator

    from agentmux.agent_manager import AgentManager, ManagerStats
    from agentmux.cancel import CancelToken
    from agentmux.events.bus import ChatEventBus
    from agentmux.events.types import ChatStreamEvent
    from agentmux.providers.models import (
        AIProvider,
        Content,
        Part,
        Tool,
        UnifiedResponse,
        UsageMetadata,
    )
    from agentmux.sessions.base import GenerationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActiveProviderInfo:
    provider: AIProvider | None = None
    model: str | None = None
    session_id: str | None = None


class MultiProviderChat:
    """Chat against whichever session the agent manager has active.

    The facade remembers a tool list and applies it to every session it
    switches to, so tools survive provider changes.

    Example:
        chat = MultiProviderChat(manager, event_bus=ChatEventBus())
        await chat.create_quick_session("ollama", "llama3")
        async for event in chat.stream_events("Summarize this repo"):
            ...
    """

    def __init__(
        self, agent_manager: AgentManager, *, event_bus: ChatEventBus | None = None
    ) -> None:
        self.agent_manager = agent_manager
        self.event_bus = event_bus
        self._tools: list[Tool] = []

    @property
    def active_session(self) -> ChatSession | None:
        return self.agent_manager.get_active_session()

    def _require_session(self) -> ChatSession:
        session = self.active_session
        if session is None:
            raise ChatSessionError(
                "No active session",
                "none",
                "unknown",
                "NO_ACTIVE_SESSION",
                hint="Start or switch to a session first.",
            )
        return session

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def set_tools(self, tools: list[Tool]) -> None:
        """Remember *tools* and give the active session the ones it can run."""
        self._tools = list(tools)
        session = self.active_session
        if session is not None:
            self.agent_manager.apply_tools(session, self._tools)

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
        session = self._require_session()
        return await session.send_message(message, config, token=token, timeout_s=timeout_s)

    def send_message_stream(
        self,
        message: str | list[Part] | Content,
        config: GenerationConfig | None = None,
        *,
        token: CancelToken | None = None,
        timeout_s: float | None = None,
    ) -> AsyncGenerator[UnifiedResponse, None]:
        session = self._require_session()
        return session.send_message_stream(message, config, token=token, timeout_s=timeout_s)

    async def stream_events(
        self,
        message: str | list[Part] | Content,
        config: GenerationConfig | None = None,
        *,
        token: CancelToken | None = None,
        timeout_s: float | None = None,
    ) -> AsyncIterator[ChatStreamEvent]:
        """Stream one exchange as events, publishing each to the event bus if set."""
        session = self._require_session()
        events = session_events(session, message, config, token=token, timeout_s=timeout_s)
        async with aclosing(events):
            async for event in events:
                if self.event_bus is not None:
                    self.event_bus.emit(event)
                yield event

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, curated: bool = False) -> list[Content]:
        return self._require_session().get_history(curated)

    def set_history(self, history: list[Content]) -> None:
        self._require_session().set_history(history)

    def add_history(self, content: Content) -> None:
        self._require_session().add_history(content)

    def clear_history(self) -> None:
        self._require_session().clear_history()

    @staticmethod
    def get_final_usage_metadata(chunks: list[UnifiedResponse]) -> UsageMetadata | None:
        return ChatSession.get_final_usage_metadata(chunks)

    # ------------------------------------------------------------------
    # Session routing
    # ------------------------------------------------------------------

    def get_active_provider_info(self) -> ActiveProviderInfo:
        session = self.active_session
        if session is None:
            return ActiveProviderInfo()
        return ActiveProviderInfo(session.provider, session.model, session.session_id)

    def is_multi_provider_mode(self) -> bool:
        return self.active_session is not None

    async def switch_to_provider(self, session_id: str, reason: str = "user request") -> None:
        """Make *session_id* active and carry the remembered tools over."""
        previous = self.active_session
        await self.agent_manager.switch_to_session(session_id)
        self._announce_switch(previous, reason)

    def _announce_switch(self, previous: ChatSession | None, reason: str) -> None:
        session = self._require_session()
        if self._tools:
            self.agent_manager.apply_tools(session, self._tools)

        if self.event_bus is not None and (
            previous is None or previous.provider is not session.provider
        ):
            self.event_bus.emit(
                ProviderSwitchedEvent(
                    provider=session.provider,
                    session_id=session.session_id,
                    from_provider=previous.provider if previous else None,
                    to_provider=session.provider,
                    reason=reason,
                )
            )
        logger.debug("Switched to session %s", session.session_id)

    async def create_quick_session(
        self,
        provider: AIProvider | str,
        model: str | None = None,
        name: str | None = None,
    ) -> str:
        """Start a throwaway session for *provider* and make it active."""
        # The manager may already point at the new session, so look first.
        previous = self.active_session
        session_id = await self.agent_manager.create_quick_session(provider, model, name)
        await self.agent_manager.switch_to_session(session_id)
        self._announce_switch(previous, "quick session")
        return session_id

    def get_stats(self) -> ManagerStats:
        return self.agent_manager.get_stats()
