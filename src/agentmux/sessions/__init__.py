"""Chat sessions and the per-provider session factories."""

from agentmux.sessions.base import (
    ChatSession,
    GenerationConfig,
    SessionCapabilities,
    SessionFactory,
    SessionStats,
    TokenCount,
)
from agentmux.sessions.claude import ClaudeChatSession, ClaudeSessionFactory
from agentmux.sessions.gemini import GeminiChatSession, GeminiSessionFactory
from agentmux.sessions.ollama import OllamaChatSession, OllamaSessionFactory

__all__ = [
    "ChatSession",
    "ClaudeChatSession",
    "ClaudeSessionFactory",
    "GeminiChatSession",
    "GeminiSessionFactory",
    "GenerationConfig",
    "OllamaChatSession",
    "OllamaSessionFactory",
    "SessionCapabilities",
    "SessionFactory",
    "SessionStats",
    "TokenCount",
]
