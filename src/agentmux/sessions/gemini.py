"""Gemini chat session: native JSON schema and thinking-capable models."""

from __future__ import annotations

from dataclasses import replace

from agentmux.providers.models import AIProvider
from agentmux.sessions.base import ChatSession, SessionCapabilities, SessionFactory

GEMINI_MIME_TYPES = (
    "text/plain",
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/heic",
    "image/heif",
    "application/pdf",
    "text/csv",
    "text/html",
    "text/javascript",
    "text/css",
    "application/json",
)


class GeminiChatSession(ChatSession):
    context_lengths = (
        ("gemini-2.0", 2_097_152),
        ("gemini-2.5", 2_097_152),
        ("gemini-1.5", 1_048_576),
        ("flash", 1_048_576),
    )
    default_context_length = 32_000
    native_json_schema = True

    def get_capabilities(self) -> SessionCapabilities:
        return replace(
            super().get_capabilities(),
            supports_thinking=self.model.startswith("gemini-2.5"),
            supported_mime_types=GEMINI_MIME_TYPES,
        )


class GeminiSessionFactory(SessionFactory):
    provider = AIProvider.GEMINI
    session_class = GeminiChatSession
