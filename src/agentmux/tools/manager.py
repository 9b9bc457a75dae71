"""Per-agent tool selection on top of the global registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from agentmux.config import coerce_provider
from agentmux.provider_factory import ProviderFactory
from agentmux.providers.models import AIProvider
from agentmux.tools.registry import ToolRegistry, ToolStats, apply_provider_overrides

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from agentmux.config import AgentConfig
    from agentmux.providers.base import ProviderCapabilities
    from agentmux.providers.models import Tool

UseCase = Literal["development", "research", "general"]

USE_CASE_TOOLS: dict[str, frozenset[str]] = {
    "development": frozenset(
        {
            "read_file",
            "write_file",
            "edit_file",
            "run_shell_command",
            "diff_files",
            "grep_files",
            "glob_files",
        }
    ),
    "research": frozenset(
        {"web_search", "web_fetch", "read_file", "save_memory", "search_memory"}
    ),
}

PROVIDER_RECOMMENDATIONS: dict[AIProvider, tuple[str, ...]] = {
    AIProvider.GEMINI: (
        "Use all available tools; Gemini has full function-calling support.",
        "Consider enabling MCP tools for extended functionality.",
        "Image processing tools work well with vision models.",
    ),
    AIProvider.CLAUDE: (
        "Prefer text-based tools for reasoning-heavy work.",
        "Use file system tools for code analysis tasks.",
        "Web search tools complement the model's training data.",
    ),
    AIProvider.OLLAMA: (
        "Limit to basic tools; most local models lack function calling.",
        "Focus on file reading and shell command tools.",
        "Summarize tool output to fit smaller context windows.",
    ),
}


@dataclass(frozen=True)
class ToolValidation:
    """Outcome of checking an agent's tools; only ``errors`` block the agent."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class CompatibilityReport:
    matrix: dict[str, dict[AIProvider, bool]]
    stats: dict[AIProvider, ToolStats]
    recommendations: dict[AIProvider, list[str]]


class ToolManager:
    """Maps agents to tool names and resolves them against provider capabilities.

    Per-agent name lists live here, separate from the registry, so one tool
    can be enabled for some agents and not others.
    """

    def __init__(self, registry: ToolRegistry | None = None) -> None:
        if registry is None:
            registry = ToolRegistry()
            registry.register_default_tools()
        self._registry = registry
        self._agent_tools: dict[str, list[str]] = {}

    def get_registry(self) -> ToolRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Agent mappings
    # ------------------------------------------------------------------

    def set_agent_tools(self, agent_id: str, tool_names: Iterable[str]) -> None:
        self._agent_tools[agent_id] = list(tool_names)

    def get_agent_tools(
        self,
        agent_id: str,
        provider: AIProvider | str,
        capabilities: ProviderCapabilities,
    ) -> tuple[list[Tool], list[str]]:
        """Resolve the agent's tool names; no names means every compatible tool."""
        requested = self._agent_tools.get(agent_id)
        if not requested:
            return self._registry.get_tools_for_provider(provider, capabilities), []
        return (
            self._registry.get_tools_for_provider(provider, capabilities, requested),
            self._registry.get_unsupported_tools(provider, capabilities, requested),
        )

    def remove_agent_tools(self, agent_id: str) -> None:
        self._agent_tools.pop(agent_id, None)

    def get_all_agent_tool_mappings(self) -> dict[str, list[str]]:
        return {agent_id: list(names) for agent_id, names in self._agent_tools.items()}

    def get_tools_from_agent_config(
        self, config: AgentConfig, capabilities: ProviderCapabilities
    ) -> tuple[list[Tool], list[str]]:
        if not config.tools:
            return self._registry.get_tools_for_provider(config.provider, capabilities), []
        return self._registry.filter_tools_for_provider(
            config.tools, config.provider, capabilities
        )

    def select_session_tools(
        self,
        tools: Iterable[Tool],
        provider: AIProvider | str,
        capabilities: ProviderCapabilities,
    ) -> tuple[list[Tool], list[str]]:
        """Split *tools* into what a session may send and the names it must drop.

        Nothing is sent to a provider without function calling. Tools the
        registry does not know pass through; registered ones must be
        compatible and get their provider overrides applied.
        """
        tools = list(tools)
        if not capabilities.supports_tools:
            return [], [t.name for t in tools]
        p = coerce_provider(provider)
        supported: list[Tool] = []
        dropped: list[str] = []
        for tool in tools:
            compat = self._registry.get_tool_config(tool.name)
            if compat is None:
                supported.append(tool)
            elif not compat.supports(p, capabilities):
                dropped.append(tool.name)
            else:
                overrides = compat.provider_overrides.get(p)
                supported.append(apply_provider_overrides(tool, overrides) if overrides else tool)
        return supported, dropped

    def validate_agent_tools(
        self,
        config: AgentConfig,
        capabilities: ProviderCapabilities | None = None,
    ) -> ToolValidation:
        """Check the agent's tools against its provider.

        A provider missing from a tool's supported set is a warning; a listed
        provider that lacks the tool's required capability is an error.
        """
        if not config.tools:
            return ToolValidation()
        if capabilities is None:
            capabilities = ProviderFactory.get_provider_capabilities(config.provider)

        errors: list[str] = []
        warnings: list[str] = []
        provider = config.provider.value
        for tool in config.tools:
            name = tool.name
            compat = self._registry.get_tool_config(name)
            if compat is None:
                warnings.append(f"Unknown tool '{name}'")
            elif config.provider not in compat.supported_providers:
                supported = ", ".join(sorted(p.value for p in compat.supported_providers))
                warnings.append(
                    f"Tool '{name}' is not supported by provider '{provider}'. "
                    f"Supported providers: {supported}"
                )
            elif compat.requires_capability and not capabilities.flag(
                compat.requires_capability
            ):
                errors.append(
                    f"Tool '{name}' requires capability '{compat.requires_capability}' "
                    f"which is not available in provider '{provider}'"
                )
        return ToolValidation(errors=errors, warnings=warnings)

    # ------------------------------------------------------------------
    # Recommendations and reports
    # ------------------------------------------------------------------

    def get_recommended_tools(
        self,
        provider: AIProvider | str,
        capabilities: ProviderCapabilities,
        use_case: UseCase | None = None,
    ) -> list[Tool]:
        tools = self._registry.get_tools_for_provider(provider, capabilities)
        relevant = USE_CASE_TOOLS.get(use_case or "general")
        if relevant is None:
            return tools
        return [t for t in tools if t.name in relevant]

    def generate_compatibility_report(self) -> CompatibilityReport:
        return CompatibilityReport(
            matrix=self._registry.get_compatibility_matrix(),
            stats=self._registry.get_tool_stats(),
            recommendations={p: list(PROVIDER_RECOMMENDATIONS[p]) for p in AIProvider},
        )

    def register_custom_tool(
        self,
        tool: Tool,
        supported_providers: Iterable[AIProvider | str],
        requires_capability: str | None = None,
        provider_overrides: Mapping[AIProvider | str, Mapping[str, Any]] | None = None,
    ) -> None:
        self._registry.register_tool(
            tool,
            [coerce_provider(p) for p in supported_providers],
            requires_capability=requires_capability,
            provider_overrides=provider_overrides,
        )
