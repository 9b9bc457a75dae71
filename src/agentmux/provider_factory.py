"""Adapter construction and the shared adapter cache."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import hashlib
import logging
from typing import TYPE_CHECKING

from agentmux.config import PROVIDER_MODELS, coerce_provider
from agentmux.errors import AgentmuxError, ConfigurationError
from agentmux.providers.base import ProviderCapabilities
from agentmux.providers.claude import CLAUDE_MAX_CONTEXT, ClaudeProviderClient
from agentmux.providers.gemini import GEMINI_MAX_CONTEXT, GeminiProviderClient
from agentmux.providers.models import AIProvider
from agentmux.providers.ollama import OLLAMA_MAX_CONTEXT, OllamaProviderClient

if TYPE_CHECKING:
    from collections.abc import Iterable

    from agentmux.config import ProviderConfig
    from agentmux.providers.base import BaseProviderClient, ProviderClient
    from agentmux.retry import RetryPolicy

logger = logging.getLogger(__name__)

_ADAPTERS: dict[AIProvider, type[BaseProviderClient]] = {
    AIProvider.GEMINI: GeminiProviderClient,
    AIProvider.CLAUDE: ClaudeProviderClient,
    AIProvider.OLLAMA: OllamaProviderClient,
}

_STATIC_CAPABILITIES: dict[AIProvider, ProviderCapabilities] = {
    AIProvider.GEMINI: ProviderCapabilities(
        supports_streaming=True,
        supports_tools=True,
        supports_images=True,
        supports_system_prompts=True,
        max_context_length=GEMINI_MAX_CONTEXT,
        supported_models=PROVIDER_MODELS[AIProvider.GEMINI],
    ),
    AIProvider.CLAUDE: ProviderCapabilities(
        supports_streaming=True,
        supports_tools=True,
        supports_images=True,
        supports_system_prompts=True,
        max_context_length=CLAUDE_MAX_CONTEXT,
        supported_models=PROVIDER_MODELS[AIProvider.CLAUDE],
    ),
    # Image support depends on the pulled model, so it is not advertised here.
    AIProvider.OLLAMA: ProviderCapabilities(
        supports_streaming=True,
        supports_tools=False,
        supports_images=False,
        supports_system_prompts=True,
        max_context_length=OLLAMA_MAX_CONTEXT,
        supported_models=PROVIDER_MODELS[AIProvider.OLLAMA],
    ),
}


@dataclass(frozen=True)
class ProviderConfigCheck:
    """Outcome of a pre-flight ``test_provider_config`` run."""

    valid: bool
    error: str | None = None
    capabilities: ProviderCapabilities | None = None


def _credential_marker(api_key: str | None) -> str:
    # Distinguishes credentials without keeping the raw key in the cache key.
    if not api_key:
        return "no-key"
    return "key:" + hashlib.sha256(api_key.encode()).hexdigest()[:12]


class ProviderFactory:
    """Creates adapters and caches them by configuration identity.

    The cache is never invalidated automatically: after rotating a
    credential or changing an endpoint, call ``remove_cached_client`` or
    ``clear_cache``.
    """

    def __init__(self, *, retry_policy: RetryPolicy | None = None) -> None:
        self.retry_policy = retry_policy
        self._cache: dict[str, ProviderClient] = {}

    @staticmethod
    def cache_key(config: ProviderConfig) -> str:
        auth = config.auth_type.value if config.auth_type else "none"
        return "|".join(
            (
                config.provider.value,
                config.model,
                auth,
                _credential_marker(config.api_key),
                config.endpoint or "default-endpoint",
            )
        )

    @staticmethod
    def build_client(
        config: ProviderConfig, *, retry_policy: RetryPolicy | None = None
    ) -> ProviderClient:
        """Construct a fresh, uncached adapter for *config*."""
        if not config.model:
            raise ConfigurationError("Model is required", hint="Set ProviderConfig.model.")
        if config.auth_type is None:
            raise ConfigurationError("Auth type is required")
        adapter_cls = _ADAPTERS.get(coerce_provider(config.provider))
        if adapter_cls is None:
            raise ConfigurationError(f"Unsupported provider: {config.provider}")
        return adapter_cls(config, retry_policy=retry_policy)

    def create_client(self, config: ProviderConfig) -> ProviderClient:
        """Return the cached adapter for *config*, creating it on first use."""
        # ``enabled`` is not part of the key, so check it before a cache hit.
        if not config.enabled:
            raise ConfigurationError(
                f"Provider {config.provider.value} is disabled",
                hint="Set enabled=True in the provider configuration.",
            )
        key = self.cache_key(config)
        client = self._cache.get(key)
        if client is not None:
            logger.debug("Adapter cache hit for %s/%s", config.provider.value, config.model)
            return client
        client = self.build_client(config, retry_policy=self.retry_policy)
        self._cache[key] = client
        return client

    def create_clients(self, configs: Iterable[ProviderConfig]) -> dict[str, ProviderClient]:
        """Create adapters for every enabled config, skipping failures."""
        clients: dict[str, ProviderClient] = {}
        for config in configs:
            if not config.enabled:
                continue
            try:
                clients[f"{config.provider.value}-{config.model}"] = self.create_client(config)
            except AgentmuxError as e:
                logger.warning("Failed to create client for %s: %s", config.provider.value, e)
        return clients

    def remove_cached_client(self, config: ProviderConfig) -> ProviderClient | None:
        """Evict *config*'s adapter and return it so the caller can close it."""
        return self._cache.pop(self.cache_key(config), None)

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_cached_client_keys(self) -> list[str]:
        return list(self._cache)

    @staticmethod
    def get_provider_capabilities(provider: AIProvider | str) -> ProviderCapabilities:
        """Static capabilities for *provider*, without constructing an adapter."""
        return _STATIC_CAPABILITIES[coerce_provider(provider)]

    async def test_provider_config(self, config: ProviderConfig) -> ProviderConfigCheck:
        """Dry-run *config*: construct, validate and probe without caching."""
        try:
            client = self.build_client(config, retry_policy=self.retry_policy)
        except AgentmuxError as e:
            return ProviderConfigCheck(valid=False, error=str(e))
        try:
            if not await client.validate_config():
                return ProviderConfigCheck(valid=False, error="Invalid configuration")
            if not await client.test_connection():
                return ProviderConfigCheck(valid=False, error="Cannot connect to provider")
            return ProviderConfigCheck(valid=True, capabilities=client.capabilities)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return ProviderConfigCheck(valid=False, error=str(e))
        finally:
            await client.aclose()

    async def aclose(self) -> None:
        """Close and forget every cached adapter."""
        clients = list(self._cache.values())
        self._cache.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception as e:
                logger.warning("Failed to close %s adapter: %s", client.provider.value, e)
