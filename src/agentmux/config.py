"""Configuration: frozen provider, agent and multi-provider settings.

Credentials and endpoints fall back to standard environment variables when a
config leaves them unset. Resolved credentials are never rendered: configs
print ``api_key`` as ``[REDACTED]``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
import os
import re
from typing import Any

from dotenv import load_dotenv

from agentmux.errors import ConfigurationError, UnknownProviderError
from agentmux.providers.models import AIProvider, ProviderAuthType, Tool

load_dotenv()

DEFAULT_CLAUDE_ENDPOINT = "https://api.anthropic.com/v1/messages"
DEFAULT_OLLAMA_ENDPOINT = "http://localhost:11434"

DEFAULT_ENDPOINTS: dict[AIProvider, str] = {
    AIProvider.CLAUDE: DEFAULT_CLAUDE_ENDPOINT,
    AIProvider.OLLAMA: DEFAULT_OLLAMA_ENDPOINT,
}

#: Known model names per provider. Ollama serves whatever has been pulled, so
#: its list is advisory only.
PROVIDER_MODELS: dict[AIProvider, tuple[str, ...]] = {
    AIProvider.GEMINI: (
        "gemini-2.0-flash-exp",
        "gemini-2.0-flash",
        "gemini-2.5-pro",
        "gemini-2.5-flash",
        "gemini-1.5-pro",
        "gemini-1.5-flash",
        "gemini-1.0-pro",
    ),
    AIProvider.CLAUDE: (
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
    ),
    AIProvider.OLLAMA: (
        "llama2",
        "llama2:13b",
        "llama2:70b",
        "llama3",
        "codellama",
        "codellama:13b",
        "codellama:34b",
        "mistral",
        "mixtral",
        "llava",
        "phi",
        "neural-chat",
        "starling-lm",
    ),
}

DEFAULT_MODELS: dict[AIProvider, str] = {
    AIProvider.GEMINI: "gemini-2.0-flash-exp",
    AIProvider.CLAUDE: "claude-3-5-sonnet-20241022",
    AIProvider.OLLAMA: "llama2",
}

DEFAULT_AUTH_TYPES: dict[AIProvider, ProviderAuthType] = {
    AIProvider.GEMINI: ProviderAuthType.GEMINI_API_KEY,
    AIProvider.CLAUDE: ProviderAuthType.CLAUDE_API_KEY,
    AIProvider.OLLAMA: ProviderAuthType.OLLAMA_LOCAL,
}

# Provider-specific credential environment variables, in lookup order.
_API_KEY_ENV_VARS: dict[AIProvider, tuple[str, ...]] = {
    AIProvider.GEMINI: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    AIProvider.CLAUDE: ("ANTHROPIC_API_KEY",),
    AIProvider.OLLAMA: (),
}

# Provider-specific endpoint environment variables, in lookup order.
_ENDPOINT_ENV_VARS: dict[AIProvider, tuple[str, ...]] = {
    AIProvider.GEMINI: (),
    AIProvider.CLAUDE: ("CLAUDE_ENDPOINT",),
    AIProvider.OLLAMA: ("OLLAMA_HOST", "OLLAMA_ENDPOINT"),
}

_KEY_AUTH_TYPES = frozenset(
    {
        ProviderAuthType.GEMINI_API_KEY,
        ProviderAuthType.VERTEX_AI,
        ProviderAuthType.CLAUDE_API_KEY,
    }
)


def coerce_provider(value: AIProvider | str) -> AIProvider:
    """Return the provider enum for *value* or raise ``UnknownProviderError``."""
    try:
        return AIProvider(value)
    except ValueError:
        supported = ", ".join(repr(p.value) for p in AIProvider)
        raise UnknownProviderError(
            f"Unknown provider: {value!r}",
            hint=f"Supported providers: {supported}",
        ) from None


def _first_env(names: tuple[str, ...]) -> str | None:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


def api_key_env_vars(provider: AIProvider | str) -> tuple[str, ...]:
    return _API_KEY_ENV_VARS[coerce_provider(provider)]


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable adapter configuration.

    Example:
        config = ProviderConfig(provider="claude", model="claude-3-5-sonnet-20241022")
        # api_key resolves from ANTHROPIC_API_KEY via apply_environment_variables()
    """

    provider: AIProvider
    model: str
    auth_type: ProviderAuthType | None = None
    api_key: str | None = None
    endpoint: str | None = None
    proxy: str | None = None
    enabled: bool = True
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    vertexai: bool | None = None

    def __post_init__(self) -> None:
        """Normalize enum-valued fields."""
        provider = coerce_provider(self.provider)
        object.__setattr__(self, "provider", provider)
        if self.auth_type is None:
            object.__setattr__(self, "auth_type", DEFAULT_AUTH_TYPES[provider])
        else:
            try:
                object.__setattr__(self, "auth_type", ProviderAuthType(self.auth_type))
            except ValueError:
                raise ConfigurationError(
                    f"Unknown auth type: {self.auth_type!r}",
                    hint="Use one of: "
                    + ", ".join(a.value for a in ProviderAuthType),
                ) from None

    @property
    def requires_api_key(self) -> bool:
        return self.auth_type in _KEY_AUTH_TYPES

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"ProviderConfig(provider={self.provider.value!r}, model={self.model!r}, "
            f"auth_type={self.auth_type.value if self.auth_type else None!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, "
            f"endpoint={self.endpoint!r}, enabled={self.enabled})"
        )

    __repr__ = __str__


@dataclass(frozen=True)
class AgentConfig:
    """A named agent: provider settings plus tools and an optional system prompt."""

    agent_id: str
    name: str
    provider: AIProvider
    provider_config: ProviderConfig
    tools: list[Tool] | None = None
    system_prompt: str | None = None
    auto_start: bool = False
    #: Per-agent session cap; ``None`` means only the global cap applies.
    max_sessions: int | None = None

    def __post_init__(self) -> None:
        """Normalize the provider enum."""
        object.__setattr__(self, "provider", coerce_provider(self.provider))


@dataclass(frozen=True)
class GlobalSettings:
    enable_auto_switching: bool = False
    enable_load_balancing: bool = False
    enable_fallback: bool = True
    telemetry_enabled: bool = True


@dataclass(frozen=True)
class MultiProviderConfig:
    """Fully-resolved configuration handed over by the application's loader."""

    providers: dict[AIProvider, ProviderConfig]
    agents: list[AgentConfig] = field(default_factory=list)
    default_provider: AIProvider = AIProvider.GEMINI
    active_agents: list[str] = field(default_factory=list)
    max_concurrent_sessions: int = 5
    global_settings: GlobalSettings = field(default_factory=GlobalSettings)

    def __post_init__(self) -> None:
        """Validate numeric fields and normalize the default provider."""
        object.__setattr__(
            self, "default_provider", coerce_provider(self.default_provider)
        )
        if self.max_concurrent_sessions < 1:
            raise ConfigurationError(
                f"max_concurrent_sessions must be >= 1, got {self.max_concurrent_sessions}",
                hint="This caps how many sessions may be live at once.",
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MultiProviderConfig:
        """Build from a plain mapping, filling gaps with defaults."""
        return merge_with_defaults(data)


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_PROVIDER_CONFIGS: dict[AIProvider, dict[str, Any]] = {
    AIProvider.GEMINI: {
        "model": "gemini-2.0-flash-exp",
        "auth_type": ProviderAuthType.GEMINI_API_KEY,
        "enabled": True,
        "max_tokens": 8192,
        "temperature": 0.7,
        "top_p": 0.95,
    },
    AIProvider.CLAUDE: {
        "model": "claude-3-5-sonnet-20241022",
        "auth_type": ProviderAuthType.CLAUDE_API_KEY,
        "enabled": False,
        "max_tokens": 8192,
        "temperature": 0.7,
        "top_p": 0.95,
    },
    AIProvider.OLLAMA: {
        "model": "llama2",
        "auth_type": ProviderAuthType.OLLAMA_LOCAL,
        "enabled": False,
        "max_tokens": 4096,
        "temperature": 0.7,
        "top_p": 0.95,
    },
}


def default_provider_config(provider: AIProvider | str, **overrides: Any) -> ProviderConfig:
    """Return the default config for *provider* with *overrides* applied."""
    p = coerce_provider(provider)
    values = {**DEFAULT_PROVIDER_CONFIGS[p], **overrides}
    values.pop("provider", None)
    return ProviderConfig(provider=p, **values)


def create_default_config() -> MultiProviderConfig:
    """Default multi-provider config: only Gemini enabled."""
    return MultiProviderConfig(
        providers={p: default_provider_config(p) for p in AIProvider},
    )


def _provider_config_from(
    value: ProviderConfig | Mapping[str, Any], provider: AIProvider
) -> ProviderConfig:
    if isinstance(value, ProviderConfig):
        return value
    allowed = {f.name for f in fields(ProviderConfig)}
    unknown = set(value) - allowed
    if unknown:
        raise ConfigurationError(
            f"Unknown provider config keys for {provider.value}: {sorted(unknown)}",
            hint=f"Allowed keys: {sorted(allowed)}",
        )
    return default_provider_config(provider, **dict(value))


def _agent_config_from(value: AgentConfig | Mapping[str, Any]) -> AgentConfig:
    if isinstance(value, AgentConfig):
        return value
    data = dict(value)
    provider = coerce_provider(data["provider"])
    provider_config = _provider_config_from(data.get("provider_config", {}), provider)
    tools = data.get("tools")
    if tools is not None:
        tools = [t if isinstance(t, Tool) else Tool.from_dict(t) for t in tools]
    return AgentConfig(
        agent_id=data.get("agent_id") or derive_agent_id(str(data.get("name", ""))),
        name=str(data.get("name", "")),
        provider=provider,
        provider_config=provider_config,
        tools=tools,
        system_prompt=data.get("system_prompt"),
        auto_start=bool(data.get("auto_start", False)),
        max_sessions=data.get("max_sessions"),
    )


def merge_with_defaults(user_config: Mapping[str, Any]) -> MultiProviderConfig:
    """Overlay a partial user configuration on top of the defaults."""
    defaults = create_default_config()
    providers = dict(defaults.providers)
    for key, value in (user_config.get("providers") or {}).items():
        provider = coerce_provider(key)
        providers[provider] = _provider_config_from(value, provider)

    settings = user_config.get("global_settings") or {}
    if not isinstance(settings, GlobalSettings):
        settings = replace(defaults.global_settings, **dict(settings))

    return MultiProviderConfig(
        providers=providers,
        agents=[_agent_config_from(a) for a in user_config.get("agents") or []],
        default_provider=user_config.get("default_provider") or defaults.default_provider,
        active_agents=list(user_config.get("active_agents") or []),
        max_concurrent_sessions=user_config.get("max_concurrent_sessions")
        or defaults.max_concurrent_sessions,
        global_settings=settings,
    )


# =============================================================================
# Environment fallbacks
# =============================================================================


def get_provider_env_vars(provider: AIProvider | str) -> dict[str, str | None]:
    """Return the environment-derived settings for *provider*."""
    p = coerce_provider(provider)
    env: dict[str, str | None] = {
        "api_key": _first_env(_API_KEY_ENV_VARS[p]),
        "endpoint": _first_env(_ENDPOINT_ENV_VARS[p]),
    }
    if p is AIProvider.GEMINI:
        env["project"] = os.environ.get("GOOGLE_CLOUD_PROJECT")
        env["location"] = os.environ.get("GOOGLE_CLOUD_LOCATION")
    return env


def apply_environment_variables(config: ProviderConfig) -> ProviderConfig:
    """Fill an unset credential/endpoint from the environment; explicit values win.

    An endpoint found in neither place falls back to the provider default.
    """
    env = get_provider_env_vars(config.provider)
    return replace(
        config,
        api_key=config.api_key or env["api_key"],
        endpoint=config.endpoint
        or env["endpoint"]
        or DEFAULT_ENDPOINTS.get(config.provider),
    )


# =============================================================================
# Validation
# =============================================================================


def validate_provider_config(config: ProviderConfig) -> list[str]:
    """Return human-readable problems with *config* (empty when valid)."""
    errors: list[str] = []

    if not config.enabled:
        errors.append("Provider is disabled")
    if not config.model:
        errors.append("Model is required")
    if config.auth_type is None:
        errors.append("Auth type is required")

    if config.requires_api_key and not config.api_key:
        if not _first_env(_API_KEY_ENV_VARS[config.provider]):
            label = "Gemini" if config.provider is AIProvider.GEMINI else "Claude"
            errors.append(f"API key is required for {label} authentication")

    if config.provider is AIProvider.CLAUDE and not (
        config.endpoint or _first_env(_ENDPOINT_ENV_VARS[AIProvider.CLAUDE])
    ):
        errors.append("Endpoint is required for Claude")
    if config.provider is AIProvider.OLLAMA and not (
        config.endpoint or _first_env(_ENDPOINT_ENV_VARS[AIProvider.OLLAMA])
    ):
        errors.append("Endpoint is required for Ollama")

    # Ollama serves whatever has been pulled; the daemon is the authority.
    if (
        config.model
        and config.provider is not AIProvider.OLLAMA
        and config.model not in PROVIDER_MODELS[config.provider]
    ):
        errors.append(
            f"Model {config.model} is not supported by {config.provider.value}"
        )

    if config.temperature is not None and not 0 <= config.temperature <= 2:
        errors.append("Temperature must be between 0 and 2")
    if config.top_p is not None and not 0 <= config.top_p <= 1:
        errors.append("TopP must be between 0 and 1")
    if config.max_tokens is not None and config.max_tokens < 1:
        errors.append("MaxTokens must be greater than 0")

    return errors


def validate_agent_config(config: AgentConfig) -> list[str]:
    """Return human-readable problems with *config* (empty when valid)."""
    errors: list[str] = []

    if not config.agent_id:
        errors.append("Agent ID is required")
    if not config.name:
        errors.append("Agent name is required")
    if config.provider_config is None:
        errors.append("Provider configuration is required")
    else:
        if config.provider_config.provider is not config.provider:
            errors.append(
                "Provider config: provider "
                f"{config.provider_config.provider.value} does not match agent provider "
                f"{config.provider.value}"
            )
        errors.extend(
            f"Provider config: {err}"
            for err in validate_provider_config(config.provider_config)
        )
    if config.max_sessions is not None and config.max_sessions < 1:
        errors.append("MaxSessions must be greater than 0")

    return errors


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def derive_agent_id(name: str) -> str:
    """Derive a stable agent id from a display name."""
    return _SLUG_RE.sub("_", name.strip().lower()).strip("_")


def create_agent_config(
    name: str,
    provider: AIProvider | str,
    *,
    agent_id: str | None = None,
    tools: list[Tool] | None = None,
    system_prompt: str | None = None,
    auto_start: bool = False,
    max_sessions: int | None = 1,
    **overrides: Any,
) -> AgentConfig:
    """Create an agent from provider defaults, *overrides* and the environment."""
    p = coerce_provider(provider)
    provider_config = default_provider_config(p, **{**overrides, "enabled": True})
    return AgentConfig(
        agent_id=agent_id or derive_agent_id(name),
        name=name,
        provider=p,
        provider_config=apply_environment_variables(provider_config),
        tools=tools,
        system_prompt=system_prompt,
        auto_start=auto_start,
        max_sessions=max_sessions,
    )
