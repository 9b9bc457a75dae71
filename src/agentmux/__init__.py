"""agentmux: run chat agents across Gemini, Claude and Ollama behind one contract.

Public API:
    - AgentManager: agent registry and concurrent session lifecycle
    - MultiProviderChat: routes chat calls to the active session
    - ProviderFactory: adapter construction and caching
    - ChatEventBus: publish/subscribe for chat stream events
    - ToolManager: per-provider tool compatibility
"""

from __future__ import annotations

import logging

from agentmux.agent_manager import AgentManager, ManagerStats
from agentmux.cancel import CancelToken
from agentmux.chat import ActiveProviderInfo, MultiProviderChat
from agentmux.config import (
    AgentConfig,
    MultiProviderConfig,
    ProviderConfig,
    create_agent_config,
    create_default_config,
    merge_with_defaults,
)
from agentmux.errors import (
    AgentmuxError,
    AgentNotFoundError,
    APIError,
    AuthenticationError,
    ChatSessionError,
    ConcurrencyLimitError,
    ConfigurationError,
    DuplicateAgentError,
    RateLimitError,
    SessionNotFoundError,
)
from agentmux.events import ChatEventBus, ChatStreamEventType
from agentmux.provider_factory import ProviderFactory
from agentmux.providers.models import AIProvider, Content, Part, Tool, UnifiedResponse
from agentmux.retry import RetryPolicy
from agentmux.sessions import ChatSession, GenerationConfig
from agentmux.tools import ToolManager, ToolRegistry

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("agentmux")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("agentmux").addHandler(logging.NullHandler())

__all__ = [
    "AIProvider",
    "APIError",
    "ActiveProviderInfo",
    "AgentConfig",
    "AgentManager",
    "AgentNotFoundError",
    "AgentmuxError",
    "AuthenticationError",
    "CancelToken",
    "ChatEventBus",
    "ChatSession",
    "ChatSessionError",
    "ChatStreamEventType",
    "ConcurrencyLimitError",
    "ConfigurationError",
    "Content",
    "DuplicateAgentError",
    "GenerationConfig",
    "ManagerStats",
    "MultiProviderChat",
    "MultiProviderConfig",
    "Part",
    "ProviderConfig",
    "ProviderFactory",
    "RateLimitError",
    "RetryPolicy",
    "SessionNotFoundError",
    "Tool",
    "ToolManager",
    "ToolRegistry",
    "UnifiedResponse",
    "create_agent_config",
    "create_default_config",
    "merge_with_defaults",
]
