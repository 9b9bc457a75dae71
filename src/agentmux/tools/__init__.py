"""Tool compatibility registry and per-agent tool selection."""

from agentmux.tools.manager import CompatibilityReport, ToolManager, ToolValidation
from agentmux.tools.registry import (
    DEFAULT_TOOLS,
    ToolCompatibility,
    ToolRegistry,
    ToolStats,
)

__all__ = [
    "DEFAULT_TOOLS",
    "CompatibilityReport",
    "ToolCompatibility",
    "ToolManager",
    "ToolRegistry",
    "ToolStats",
    "ToolValidation",
]
