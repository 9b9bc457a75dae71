"""Claude chat session: instruction-injected JSON, no embeddings."""

from __future__ import annotations

from agentmux.errors import ChatSessionError
from agentmux.providers.models import AIProvider
from agentmux.sessions.base import ChatSession, SessionFactory


class ClaudeChatSession(ChatSession):
    context_lengths = (
        ("claude-3", 200_000),
        ("claude-2", 100_000),
    )
    default_context_length = 100_000

    async def generate_embedding(self, texts: list[str]) -> list[list[float]]:
        raise ChatSessionError(
            "Claude does not support embedding generation",
            self.session_id,
            self.provider.value,
            "UNSUPPORTED_OPERATION",
        )


class ClaudeSessionFactory(SessionFactory):
    provider = AIProvider.CLAUDE
    session_class = ClaudeChatSession
