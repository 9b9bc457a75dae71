"""Ollama chat session: per-model capabilities and a daemon liveness probe."""

from __future__ import annotations

from dataclasses import replace
import logging

from agentmux.cancel import run_cancellable
from agentmux.config import apply_environment_variables, default_provider_config
from agentmux.errors import APIError, ChatSessionError
from agentmux.providers.models import AIProvider
from agentmux.providers.ollama import OllamaProviderClient
from agentmux.sessions.base import ChatSession, SessionCapabilities, SessionFactory

logger = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT_S = 5.0
FALLBACK_MODELS = ("llama2", "llama3", "mistral", "codellama", "llava")


def is_vision_model(model: str) -> bool:
    lowered = model.lower()
    return "llava" in lowered or "vision" in lowered


class OllamaChatSession(ChatSession):
    context_lengths = (
        ("codellama", 16_384),
        ("llama3", 8_192),
        ("llama2", 4_096),
        ("mistral", 8_192),
        ("llava", 4_096),
    )
    default_context_length = 4_096

    def get_capabilities(self) -> SessionCapabilities:
        vision = is_vision_model(self.model)
        return replace(
            super().get_capabilities(),
            supports_tools=False,
            supports_images=vision,
            supported_mime_types=(
                ("text/plain", "image/jpeg", "image/png", "image/gif", "image/webp")
                if vision
                else ("text/plain",)
            ),
        )

    async def is_healthy(self) -> bool:
        """True when the daemon answers and has this session's model pulled."""
        check = getattr(self.client, "is_model_available", None)
        if check is None:
            return await super().is_healthy()
        try:
            return await run_cancellable(check(self.model), timeout_s=HEALTH_CHECK_TIMEOUT_S)
        except APIError as e:
            logger.debug("Ollama health check failed for %s: %s", self.session_id, e)
            return False


class OllamaSessionFactory(SessionFactory):
    """Ollama sessions are only handed out once the daemon serves the model."""

    provider = AIProvider.OLLAMA
    session_class = OllamaChatSession

    async def get_available_models(self, provider: AIProvider | str | None = None) -> list[str]:
        config = apply_environment_variables(
            default_provider_config(AIProvider.OLLAMA, enabled=True)
        )
        client = OllamaProviderClient(config)
        try:
            return await run_cancellable(client.list_models(), timeout_s=HEALTH_CHECK_TIMEOUT_S)
        except APIError as e:
            logger.warning("Failed to fetch Ollama models: %s", e)
            return list(FALLBACK_MODELS)
        finally:
            await client.aclose()

    async def _check_session(self, session: ChatSession) -> None:
        if await session.is_healthy():
            return
        endpoint = getattr(session.client, "endpoint", None)
        await session.dispose()
        raise ChatSessionError(
            f"Ollama model '{session.model}' is not available at {endpoint}",
            session.session_id,
            self.provider.value,
            "MODEL_NOT_AVAILABLE",
            hint=f"Run `ollama pull {session.model}` first.",
        )
