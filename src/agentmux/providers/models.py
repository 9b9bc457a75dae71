"""Domain models for the unified provider contract."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

Role = Literal["user", "model"]


class AIProvider(str, Enum):
    """Closed set of supported provider backends."""

    GEMINI = "gemini"
    CLAUDE = "claude"
    OLLAMA = "ollama"

    def __str__(self) -> str:
        return self.value


class ProviderAuthType(str, Enum):
    """How an adapter authenticates against its backend."""

    OAUTH_PERSONAL = "oauth-personal"
    GEMINI_API_KEY = "gemini-api-key"
    VERTEX_AI = "vertex-ai"
    CLOUD_SHELL = "cloud-shell"
    CLAUDE_API_KEY = "claude-api-key"
    OLLAMA_LOCAL = "ollama-local"
    OLLAMA_REMOTE = "ollama-remote"

    def __str__(self) -> str:
        return self.value


class FinishReason(str, Enum):
    """Normalized stop reasons shared by every adapter."""

    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    RECITATION = "RECITATION"
    OTHER = "OTHER"
    UNSPECIFIED = "FINISH_REASON_UNSPECIFIED"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class InlineData:
    """Base64-encoded binary payload (e.g. an image)."""

    mime_type: str
    data: str


@dataclass(frozen=True)
class FunctionCall:
    """A tool call requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass(frozen=True)
class FunctionResponse:
    """The result of a tool call, sent back to the model."""

    name: str
    response: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass(frozen=True)
class Part:
    """Atomic content unit within a turn."""

    text: str | None = None
    inline_data: InlineData | None = None
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None
    thought: bool = False

    @classmethod
    def from_text(cls, text: str) -> Part:
        return cls(text=text)

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> Part:
        encoded = base64.b64encode(data).decode("ascii")
        return cls(inline_data=InlineData(mime_type=mime_type, data=encoded))

    @property
    def is_empty(self) -> bool:
        """True when the part carries no payload at all."""
        return (
            self.text is None
            and self.inline_data is None
            and self.function_call is None
            and self.function_response is None
        )


@dataclass(frozen=True)
class Content:
    """One conversation turn: a role plus ordered parts."""

    role: Role
    parts: list[Part] = field(default_factory=list)

    @property
    def text(self) -> str:
        """Concatenated non-thought text of all parts."""
        return "".join(p.text for p in self.parts if p.text and not p.thought)


def user_content(message: str | list[Part]) -> Content:
    """Build a user turn from a plain string or a part list."""
    if isinstance(message, str):
        return Content(role="user", parts=[Part(text=message)])
    return Content(role="user", parts=list(message))


def model_content(text: str) -> Content:
    return Content(role="model", parts=[Part(text=text)])


@dataclass(frozen=True)
class FunctionDeclaration:
    """JSON-schema-shaped tool declaration, treated opaquely apart from its name."""

    name: str
    description: str = ""
    parameters: dict[str, Any] | None = None


@dataclass(frozen=True)
class Tool:
    """A bundle of function declarations; identified by its first declaration."""

    function_declarations: list[FunctionDeclaration] = field(default_factory=list)

    @property
    def name(self) -> str:
        if self.function_declarations:
            return self.function_declarations[0].name
        return "unknown_tool"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Tool:
        """Accept ``{name, description, parameters}`` or ``{function_declarations: [...]}``."""
        decls = data.get("function_declarations")
        if decls is None:
            decls = [data]
        return cls(
            function_declarations=[
                FunctionDeclaration(
                    name=str(d.get("name", "unknown_tool")),
                    description=str(d.get("description", "")),
                    parameters=d.get("parameters"),
                )
                for d in decls
            ]
        )


@dataclass(frozen=True)
class UsageMetadata:
    """Token accounting reported by a provider."""

    prompt_token_count: int = 0
    candidates_token_count: int = 0
    total_token_count: int = 0


@dataclass(frozen=True)
class UnifiedRequest:
    """A provider-agnostic generation request."""

    model: str
    contents: list[Content]
    tools: list[Tool] | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stream: bool = False
    system_instruction: str | None = None
    response_schema: dict[str, Any] | None = None


@dataclass
class UnifiedResponse:
    """A provider-agnostic generation result (or one streamed delta)."""

    id: str
    provider: AIProvider
    model: str
    content: list[Content] = field(default_factory=list)
    usage_metadata: UsageMetadata | None = None
    finish_reason: FinishReason | None = None
    error: str | None = None

    @property
    def text(self) -> str:
        return "".join(c.text for c in self.content)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [
            p.function_call
            for c in self.content
            for p in c.parts
            if p.function_call is not None
        ]
