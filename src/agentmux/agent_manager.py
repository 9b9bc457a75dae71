"""Agent registry and the lifecycle of concurrently live sessions.

The manager is an explicitly constructed object; applications own one and
pass it where needed. Its maps are mutated only by its own methods, which is
safe under asyncio's single-threaded scheduling without locks.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import time
from typing import TYPE_CHECKING, Any

from agentmux.config import (
    AgentConfig,
    apply_environment_variables,
    coerce_provider,
    default_provider_config,
    validate_agent_config,
)
from agentmux.errors import (
    AgentNotFoundError,
    ConcurrencyLimitError,
    ConfigurationError,
    DuplicateAgentError,
    InvalidAgentConfigError,
    ProviderUnavailableError,
    SessionNotFoundError,
)
from agentmux.provider_factory import ProviderFactory
from agentmux.providers.models import AIProvider, user_content
from agentmux.sessions.base import DEFAULT_TIMEOUT_S, generate_session_id
from agentmux.sessions.claude import ClaudeChatSession
from agentmux.sessions.gemini import GeminiChatSession
from agentmux.sessions.ollama import OllamaChatSession
from agentmux.tools.manager import ToolManager

if TYPE_CHECKING:
    from agentmux.config import MultiProviderConfig, ProviderConfig
    from agentmux.providers.base import ProviderClient
    from agentmux.providers.models import Tool
    from agentmux.sessions.base import ChatSession

logger = logging.getLogger(__name__)

_SESSION_CLASSES: dict[AIProvider, type[ChatSession]] = {
    AIProvider.GEMINI: GeminiChatSession,
    AIProvider.CLAUDE: ClaudeChatSession,
    AIProvider.OLLAMA: OllamaChatSession,
}


@dataclass(frozen=True)
class ManagerStats:
    total_agents: int
    active_agents: int
    total_sessions: int
    sessions_by_provider: dict[AIProvider, int] = field(default_factory=dict)


class AgentManager:
    """Creates agents, enforces session caps and tracks the active session.

    Example:
        async with AgentManager(max_concurrent_sessions=3) as manager:
            await manager.create_agent(create_agent_config("coder", "claude"))
            session_id = await manager.start_session("coder")
            reply = await manager.get_session(session_id).send_message("Hi")
    """

    def __init__(
        self,
        max_concurrent_sessions: int = 5,
        provider_factory: ProviderFactory | None = None,
        *,
        provider_defaults: dict[AIProvider, ProviderConfig] | None = None,
        timeout_s: float | None = DEFAULT_TIMEOUT_S,
        tool_manager: ToolManager | None = None,
    ) -> None:
        """Create an empty manager.

        ``provider_defaults`` seeds quick sessions; without it the built-in
        provider defaults apply. ``tool_manager`` decides which of an agent's
        tools each session may send.
        """
        if max_concurrent_sessions < 1:
            raise ConfigurationError(
                f"max_concurrent_sessions must be >= 1, got {max_concurrent_sessions}"
            )
        self.max_concurrent_sessions = max_concurrent_sessions
        self._owns_factory = provider_factory is None
        self.provider_factory = provider_factory or ProviderFactory()
        self.timeout_s = timeout_s
        self.tool_manager = tool_manager or ToolManager()
        self._provider_defaults = dict(provider_defaults or {})
        self._agents: dict[str, AgentConfig] = {}
        self._clients: dict[str, ProviderClient] = {}
        self._sessions: dict[str, ChatSession] = {}
        self._session_agents: dict[str, str] = {}
        self._active_session_id: str | None = None

    @classmethod
    def from_config(
        cls, config: MultiProviderConfig, *, provider_factory: ProviderFactory | None = None
    ) -> AgentManager:
        """Build a manager from a resolved multi-provider configuration.

        Agents are not created here; creation probes the network, so callers
        await ``create_agent`` for the agents they want live.
        """
        return cls(
            config.max_concurrent_sessions,
            provider_factory,
            provider_defaults=config.providers,
        )

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def create_agent(self, config: AgentConfig) -> str:
        """Validate, probe and register *config*; auto-start if requested."""
        config = replace(
            config, provider_config=apply_environment_variables(config.provider_config)
        )
        problems = validate_agent_config(config)
        if problems:
            raise InvalidAgentConfigError(problems, agent_id=config.agent_id)
        if config.agent_id in self._agents:
            raise DuplicateAgentError(config.agent_id)

        client = self.provider_factory.create_client(config.provider_config)
        await self._preflight(config.agent_id, client, connect=True)

        self._agents[config.agent_id] = config
        self._clients[config.agent_id] = client
        logger.debug("Registered agent %s (%s)", config.agent_id, config.provider.value)

        if config.auto_start:
            try:
                await self.start_session(config.agent_id)
            except Exception:
                await self.remove_agent(config.agent_id)
                raise
        return config.agent_id

    async def _preflight(self, agent_id: str, client: ProviderClient, *, connect: bool) -> None:
        if not await client.validate_config():
            raise ProviderUnavailableError(
                f"Invalid provider configuration for agent {agent_id}",
                agent_id=agent_id,
                check="validate_config",
            )
        if connect and not await client.test_connection():
            raise ProviderUnavailableError(
                f"Cannot connect to provider for agent {agent_id}",
                agent_id=agent_id,
                check="test_connection",
            )

    async def update_agent(self, agent_id: str, /, **changes: Any) -> AgentConfig:
        """Apply *changes* to an agent, rebuilding its adapter if needed."""
        existing = self._require_agent(agent_id)
        if changes.get("agent_id", agent_id) != agent_id:
            raise ConfigurationError("agent_id cannot be changed")
        updated = replace(existing, **changes)
        if "provider_config" in changes:
            updated = replace(
                updated, provider_config=apply_environment_variables(updated.provider_config)
            )
        problems = validate_agent_config(updated)
        if problems:
            raise InvalidAgentConfigError(problems, agent_id=agent_id)

        if "provider_config" in changes:
            client = self.provider_factory.create_client(updated.provider_config)
            await self._preflight(agent_id, client, connect=False)
            self._clients[agent_id] = client

        self._agents[agent_id] = updated
        return updated

    async def remove_agent(self, agent_id: str) -> None:
        """End the agent's sessions, then drop it and its adapter."""
        agent = self._require_agent(agent_id)
        for session_id in self._sessions_for(agent_id):
            await self.end_session(session_id)

        del self._agents[agent_id]
        self.tool_manager.remove_agent_tools(agent_id)
        client = self._clients.pop(agent_id, None)
        if client is not None and all(c is not client for c in self._clients.values()):
            self.provider_factory.remove_cached_client(agent.provider_config)
            await client.aclose()

        if self._active_session_id is not None and self._session_agents.get(
            self._active_session_id
        ) == agent_id:
            self._active_session_id = None

    def get_agent_config(self, agent_id: str) -> AgentConfig | None:
        return self._agents.get(agent_id)

    def list_agents(self) -> list[AgentConfig]:
        return list(self._agents.values())

    def get_agent(self, agent_id: str) -> ChatSession | None:
        """Return the agent's oldest live session, if any."""
        for session_id in self._sessions_for(agent_id):
            return self._sessions[session_id]
        return None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(self, agent_id: str) -> str:
        """Start a session for *agent_id* and return its id."""
        agent = self._require_agent(agent_id)
        client = self._clients[agent_id]

        if len(self._sessions) >= self.max_concurrent_sessions:
            raise ConcurrencyLimitError(
                f"Maximum concurrent sessions ({self.max_concurrent_sessions}) reached",
                limit=self.max_concurrent_sessions,
            )
        owned = self._sessions_for(agent_id)
        if agent.max_sessions is not None and len(owned) >= agent.max_sessions:
            raise ConcurrencyLimitError(
                f"Maximum sessions for agent {agent_id} ({agent.max_sessions}) reached",
                limit=agent.max_sessions,
                agent_id=agent_id,
            )

        session_id = generate_session_id(agent_id, suffix_length=9)
        session = _SESSION_CLASSES[agent.provider](
            session_id,
            client,
            timeout_s=self.timeout_s,
            provider_config=agent.provider_config,
        )
        if agent.tools:
            self.apply_tools(session, agent.tools)
        if agent.system_prompt:
            session.add_history(user_content(agent.system_prompt))

        self._sessions[session_id] = session
        self._session_agents[session_id] = agent_id
        if self._active_session_id is None:
            self._active_session_id = session_id
        logger.debug("Started session %s for agent %s", session_id, agent_id)
        return session_id

    async def end_session(self, session_id: str) -> None:
        """Dispose of a session; the active pointer moves to a survivor."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        session.clear_history()
        del self._sessions[session_id]
        del self._session_agents[session_id]
        try:
            await session.dispose()
        finally:
            if self._active_session_id == session_id:
                self._active_session_id = next(iter(self._sessions), None)

    async def switch_to_session(self, session_id: str) -> None:
        if session_id not in self._sessions:
            raise SessionNotFoundError(session_id)
        self._active_session_id = session_id

    def apply_tools(self, session: ChatSession, tools: list[Tool]) -> None:
        """Give *session* the subset of *tools* its provider can run."""
        supported, dropped = self.tool_manager.select_session_tools(
            tools, session.provider, session.client.capabilities
        )
        if dropped:
            logger.warning(
                "Dropping tools unsupported by %s session %s: %s",
                session.provider.value,
                session.session_id,
                ", ".join(dropped),
            )
        session.set_tools(supported)

    def get_active_session(self) -> ChatSession | None:
        if self._active_session_id is None:
            return None
        return self._sessions.get(self._active_session_id)

    def get_session(self, session_id: str) -> ChatSession | None:
        return self._sessions.get(session_id)

    def get_active_sessions(self) -> list[ChatSession]:
        return list(self._sessions.values())

    def get_active_session_ids(self) -> list[str]:
        return list(self._sessions)

    async def create_quick_session(
        self,
        provider: AIProvider | str,
        model: str | None = None,
        name: str | None = None,
    ) -> str:
        """Create a throwaway agent for *provider* and return its live session id."""
        p = coerce_provider(provider)
        base_id = f"quick-{p.value}-{int(time.time() * 1000)}"
        agent_id, n = base_id, 1
        while agent_id in self._agents:
            agent_id, n = f"{base_id}-{n}", n + 1

        provider_config = self._provider_defaults.get(p) or default_provider_config(p)
        provider_config = replace(provider_config, enabled=True)
        if model:
            provider_config = replace(provider_config, model=model)

        await self.create_agent(
            AgentConfig(
                agent_id=agent_id,
                name=name or f"Quick {p.value} Agent",
                provider=p,
                provider_config=provider_config,
                auto_start=True,
            )
        )
        return self._sessions_for(agent_id)[0]

    # ------------------------------------------------------------------
    # Introspection and teardown
    # ------------------------------------------------------------------

    def get_stats(self) -> ManagerStats:
        by_provider = dict.fromkeys(AIProvider, 0)
        for session in self._sessions.values():
            by_provider[session.provider] += 1
        return ManagerStats(
            total_agents=len(self._agents),
            active_agents=len(set(self._session_agents.values())),
            total_sessions=len(self._sessions),
            sessions_by_provider=by_provider,
        )

    async def shutdown(self) -> None:
        """End every session (best effort), then forget all agents."""
        for session_id in list(self._sessions):
            try:
                await self.end_session(session_id)
            except Exception as e:
                logger.warning("Error ending session %s: %s", session_id, e)

        self._agents.clear()
        self._clients.clear()
        self._sessions.clear()
        self._session_agents.clear()
        self._active_session_id = None
        if self._owns_factory:
            await self.provider_factory.aclose()

    async def __aenter__(self) -> AgentManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_agent(self, agent_id: str) -> AgentConfig:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def _sessions_for(self, agent_id: str) -> list[str]:
        return [sid for sid, owner in self._session_agents.items() if owner == agent_id]
