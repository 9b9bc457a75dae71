"""Chat stream events, the event bus, and delta-to-event conversion."""

from agentmux.events.bus import ChatEventBus, EventBusStats, FilteredEventStream
from agentmux.events.stream import delta_events, response_events, session_events
from agentmux.events.types import (
    BaseChatStreamEvent,
    CancelledEvent,
    ChatStreamEvent,
    ChatStreamEventType,
    ChatStreamState,
    ContentEvent,
    ContextCompressedEvent,
    ContextLimitEvent,
    EndEvent,
    ErrorEvent,
    LoopDetectedEvent,
    PauseEvent,
    ProviderSwitchedEvent,
    ResumeEvent,
    SessionLimitEvent,
    StartEvent,
    ThoughtEvent,
    TimeoutEvent,
    TokenEvent,
    ToolCallEvent,
    ToolConfirmationEvent,
    ToolResultEvent,
)

__all__ = [
    "BaseChatStreamEvent",
    "CancelledEvent",
    "ChatEventBus",
    "ChatStreamEvent",
    "ChatStreamEventType",
    "ChatStreamState",
    "ContentEvent",
    "ContextCompressedEvent",
    "ContextLimitEvent",
    "EndEvent",
    "ErrorEvent",
    "EventBusStats",
    "FilteredEventStream",
    "LoopDetectedEvent",
    "PauseEvent",
    "ProviderSwitchedEvent",
    "ResumeEvent",
    "SessionLimitEvent",
    "StartEvent",
    "ThoughtEvent",
    "TimeoutEvent",
    "TokenEvent",
    "ToolCallEvent",
    "ToolConfirmationEvent",
    "ToolResultEvent",
    "delta_events",
    "response_events",
    "session_events",
]
