"""Unified provider contract.

Concrete adapters live in ``agentmux.providers.gemini``, ``.claude`` and
``.ollama`` and are constructed through ``agentmux.ProviderFactory``.
"""

from .base import BaseProviderClient, ProviderCapabilities, ProviderClient
from .models import (
    AIProvider,
    Content,
    FinishReason,
    FunctionCall,
    FunctionDeclaration,
    FunctionResponse,
    InlineData,
    Part,
    ProviderAuthType,
    Tool,
    UnifiedRequest,
    UnifiedResponse,
    UsageMetadata,
)

__all__ = [
    "AIProvider",
    "BaseProviderClient",
    "Content",
    "FinishReason",
    "FunctionCall",
    "FunctionDeclaration",
    "FunctionResponse",
    "InlineData",
    "Part",
    "ProviderAuthType",
    "ProviderCapabilities",
    "ProviderClient",
    "Tool",
    "UnifiedRequest",
    "UnifiedResponse",
    "UsageMetadata",
]
