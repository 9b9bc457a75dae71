"""Provider-agnostic chat stream events.

Each event kind is its own frozen dataclass so handlers can dispatch with
``match`` on the class; ``event.type`` carries the wire tag.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import TYPE_CHECKING, Any, ClassVar, Literal

if TYPE_CHECKING:
    from agentmux.providers.models import AIProvider
    from agentmux.sessions.base import TokenCount


class ChatStreamEventType(str, Enum):
    # Content streaming
    TOKEN = "token"
    CONTENT = "content"
    THOUGHT = "thought"

    # Tool interactions
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOOL_CONFIRMATION = "tool_confirmation"

    # Stream lifecycle
    START = "start"
    END = "end"
    PAUSE = "pause"
    RESUME = "resume"

    # Status
    ERROR = "error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    # Context management
    CONTEXT_COMPRESSED = "context_compressed"
    CONTEXT_LIMIT = "context_limit"
    SESSION_LIMIT = "session_limit"

    LOOP_DETECTED = "loop_detected"
    PROVIDER_SWITCHED = "provider_switched"

    def __str__(self) -> str:
        return self.value


class ChatStreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    WAITING_FOR_TOOLS = "waiting_for_tools"
    WAITING_FOR_CONFIRMATION = "waiting_for_confirmation"
    ERROR = "error"
    CANCELLED = "cancelled"
    FINISHED = "finished"


@dataclass(frozen=True, kw_only=True)
class BaseChatStreamEvent:
    """Fields shared by every event; ``timestamp`` is epoch seconds."""

    type: ClassVar[ChatStreamEventType]

    provider: AIProvider
    session_id: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, kw_only=True)
class TokenEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.TOKEN

    text: str


@dataclass(frozen=True, kw_only=True)
class ContentEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.CONTENT

    text: str


@dataclass(frozen=True, kw_only=True)
class ThoughtEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.THOUGHT

    subject: str
    description: str


@dataclass(frozen=True, kw_only=True)
class ToolCallEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.TOOL_CALL

    call_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    is_client_initiated: bool = False


@dataclass(frozen=True, kw_only=True)
class ToolResultEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.TOOL_RESULT

    call_id: str
    result: Any = None
    status: Literal["success", "error", "cancelled"] = "success"
    error: str | None = None


@dataclass(frozen=True, kw_only=True)
class ToolConfirmationEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.TOOL_CONFIRMATION

    call_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    confirmation_message: str = ""


@dataclass(frozen=True, kw_only=True)
class StartEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.START

    model: str


@dataclass(frozen=True, kw_only=True)
class EndEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.END

    reason: str
    tokens_used: TokenCount | None = None


@dataclass(frozen=True, kw_only=True)
class PauseEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.PAUSE

    reason: Literal["tool_confirmation", "user_input", "rate_limit"]


@dataclass(frozen=True, kw_only=True)
class ResumeEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.RESUME


@dataclass(frozen=True, kw_only=True)
class ErrorEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.ERROR

    message: str
    code: str | None = None
    status_code: int | None = None
    recoverable: bool = False


@dataclass(frozen=True, kw_only=True)
class CancelledEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.CANCELLED

    #: ``"user"``, ``"timeout"``, ``"system"`` or the token's own reason.
    reason: str = "user"


@dataclass(frozen=True, kw_only=True)
class TimeoutEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.TIMEOUT

    timeout_s: float | None


@dataclass(frozen=True, kw_only=True)
class ContextCompressedEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.CONTEXT_COMPRESSED

    original_token_count: int
    new_token_count: int

    @property
    def compression_ratio(self) -> float:
        if not self.original_token_count:
            return 0.0
        return self.new_token_count / self.original_token_count


@dataclass(frozen=True, kw_only=True)
class ContextLimitEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.CONTEXT_LIMIT

    current_tokens: int
    max_tokens: int


@dataclass(frozen=True, kw_only=True)
class SessionLimitEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.SESSION_LIMIT

    current_turns: int
    max_turns: int


@dataclass(frozen=True, kw_only=True)
class LoopDetectedEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.LOOP_DETECTED

    pattern: str
    occurrences: int = 1


@dataclass(frozen=True, kw_only=True)
class ProviderSwitchedEvent(BaseChatStreamEvent):
    type: ClassVar[ChatStreamEventType] = ChatStreamEventType.PROVIDER_SWITCHED

    from_provider: AIProvider | None
    to_provider: AIProvider
    reason: str = ""


ChatStreamEvent = (
    TokenEvent
    | ContentEvent
    | ThoughtEvent
    | ToolCallEvent
    | ToolResultEvent
    | ToolConfirmationEvent
    | StartEvent
    | EndEvent
    | PauseEvent
    | ResumeEvent
    | ErrorEvent
    | CancelledEvent
    | TimeoutEvent
    | ContextCompressedEvent
    | ContextLimitEvent
    | SessionLimitEvent
    | LoopDetectedEvent
    | ProviderSwitchedEvent
)
