"""Tool compatibility records keyed by tool name."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any

from agentmux.config import coerce_provider
from agentmux.errors import ConfigurationError
from agentmux.providers.base import ProviderCapabilities
from agentmux.providers.models import AIProvider, FunctionDeclaration, Tool

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

_CAPABILITY_FLAGS = frozenset(
    f.name for f in fields(ProviderCapabilities) if f.name.startswith("supports_")
)

_ALL_PROVIDERS = tuple(AIProvider)

#: Built-in tool names and the providers they are offered on.
DEFAULT_TOOLS: tuple[str, ...] = (
    "read_file",
    "write_file",
    "list_files",
    "glob_files",
    "grep_files",
    "run_shell_command",
    "web_search",
    "web_fetch",
    "save_memory",
    "search_memory",
    "edit_file",
    "diff_files",
)


@dataclass(frozen=True)
class ToolCompatibility:
    """Which providers may receive a tool, and under what capability."""

    tool_name: str
    supported_providers: frozenset[AIProvider]
    requires_capability: str | None = None
    #: Per-provider ``description``/``parameters`` overrides.
    provider_overrides: Mapping[AIProvider, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if (
            self.requires_capability is not None
            and self.requires_capability not in _CAPABILITY_FLAGS
        ):
            raise ConfigurationError(
                f"Unknown capability {self.requires_capability!r}",
                hint=f"Use one of: {', '.join(sorted(_CAPABILITY_FLAGS))}.",
            )

    def supports(self, provider: AIProvider, capabilities: ProviderCapabilities) -> bool:
        if provider not in self.supported_providers:
            return False
        return self.requires_capability is None or capabilities.flag(self.requires_capability)


@dataclass(frozen=True)
class ToolStats:
    total: int = 0
    by_capability: dict[str, int] = field(default_factory=dict)


def placeholder_tool(name: str) -> Tool:
    """A declaration-only tool with an empty object schema."""
    return Tool(
        function_declarations=[
            FunctionDeclaration(
                name=name,
                description=f"{name} tool",
                parameters={"type": "object", "properties": {}},
            )
        ]
    )


def apply_provider_overrides(tool: Tool, overrides: Mapping[str, Any]) -> Tool:
    """Return a deep copy of *tool* with *overrides* applied to its first declaration."""
    tool = copy.deepcopy(tool)
    if not tool.function_declarations:
        return tool
    first = tool.function_declarations[0]
    if overrides.get("parameters"):
        first = replace(first, parameters={**(first.parameters or {}), **overrides["parameters"]})
    if overrides.get("description"):
        first = replace(first, description=overrides["description"])
    return replace(tool, function_declarations=[first, *tool.function_declarations[1:]])


class ToolRegistry:
    """Global tool catalogue with per-provider compatibility.

    A tool is offered to a provider only when the provider is in its
    supported set and, if the tool names a capability, that capability flag
    is true.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._compat: dict[str, ToolCompatibility] = {}

    def register_tool(
        self,
        tool: Tool,
        supported_providers: Iterable[AIProvider | str],
        *,
        requires_capability: str | None = None,
        provider_overrides: Mapping[AIProvider | str, Mapping[str, Any]] | None = None,
    ) -> None:
        """Register *tool*, replacing any earlier tool with the same name."""
        name = tool.name
        self._compat[name] = ToolCompatibility(
            tool_name=name,
            supported_providers=frozenset(coerce_provider(p) for p in supported_providers),
            requires_capability=requires_capability,
            provider_overrides={
                coerce_provider(p): dict(o) for p, o in (provider_overrides or {}).items()
            },
        )
        self._tools[name] = tool

    def register_default_tools(self) -> None:
        for name in DEFAULT_TOOLS:
            self.register_tool(placeholder_tool(name), _ALL_PROVIDERS)
        self.register_tool(
            placeholder_tool("mcp_tool"),
            [AIProvider.GEMINI],
            requires_capability="supports_tools",
        )

    # ------------------------------------------------------------------
    # Compatibility queries
    # ------------------------------------------------------------------

    def get_tools_for_provider(
        self,
        provider: AIProvider | str,
        capabilities: ProviderCapabilities,
        requested: Iterable[str] | None = None,
    ) -> list[Tool]:
        """Compatible tools in registration order, optionally limited to *requested*."""
        p = coerce_provider(provider)
        wanted = None if requested is None else set(requested)
        tools: list[Tool] = []
        for name, compat in self._compat.items():
            if wanted is not None and name not in wanted:
                continue
            if not compat.supports(p, capabilities):
                continue
            overrides = compat.provider_overrides.get(p)
            tool = self._tools[name]
            tools.append(apply_provider_overrides(tool, overrides) if overrides else tool)
        return tools

    def is_tool_supported(
        self, name: str, provider: AIProvider | str, capabilities: ProviderCapabilities
    ) -> bool:
        compat = self._compat.get(name)
        return compat is not None and compat.supports(coerce_provider(provider), capabilities)

    def get_unsupported_tools(
        self,
        provider: AIProvider | str,
        capabilities: ProviderCapabilities,
        requested: Iterable[str],
    ) -> list[str]:
        return [n for n in requested if not self.is_tool_supported(n, provider, capabilities)]

    def filter_tools_for_provider(
        self,
        tools: Iterable[Tool],
        provider: AIProvider | str,
        capabilities: ProviderCapabilities,
    ) -> tuple[list[Tool], list[str]]:
        """Split *tools* into ``(supported, unsupported_names)``."""
        supported: list[Tool] = []
        unsupported: list[str] = []
        for tool in tools:
            if self.is_tool_supported(tool.name, provider, capabilities):
                supported.append(tool)
            else:
                unsupported.append(tool.name)
        return supported, unsupported

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_all_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def get_tool_config(self, name: str) -> ToolCompatibility | None:
        return self._compat.get(name)

    def get_compatibility_matrix(self) -> dict[str, dict[AIProvider, bool]]:
        return {
            name: {p: p in compat.supported_providers for p in AIProvider}
            for name, compat in self._compat.items()
        }

    def get_tool_stats(self) -> dict[AIProvider, ToolStats]:
        totals = dict.fromkeys(AIProvider, 0)
        by_capability: dict[AIProvider, dict[str, int]] = {p: {} for p in AIProvider}
        for compat in self._compat.values():
            for p in compat.supported_providers:
                totals[p] += 1
                if compat.requires_capability:
                    counts = by_capability[p]
                    counts[compat.requires_capability] = (
                        counts.get(compat.requires_capability, 0) + 1
                    )
        return {p: ToolStats(totals[p], by_capability[p]) for p in AIProvider}

    def clear(self) -> None:
        self._tools.clear()
        self._compat.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
