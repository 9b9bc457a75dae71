"""Turn a session's streamed deltas into chat stream events.

A stream always opens with ``StartEvent`` and closes with exactly one of
``EndEvent``, ``ErrorEvent`` or ``CancelledEvent`` (a deadline adds a
``TimeoutEvent`` before its ``CancelledEvent``).
"""

from __future__ import annotations

import asyncio
from contextlib import aclosing
import logging
import re
import secrets
import time
from typing import TYPE_CHECKING

from agentmux.errors import (
    APIError,
    AgentmuxError,
    ChatSessionTimeoutError,
    RequestTimeoutError,
    _walk_exception_chain,
)
from agentmux.events.types import (
    CancelledEvent,
    ContentEvent,
    EndEvent,
    ErrorEvent,
    StartEvent,
    ThoughtEvent,
    TimeoutEvent,
    ToolCallEvent,
)
from agentmux.providers.models import FinishReason
from agentmux.sessions.base import ChatSession, TokenCount

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Iterator

    from agentmux.cancel import CancelToken
    from agentmux.events.types import ChatStreamEvent
    from agentmux.providers.models import AIProvider, Content, Part, UnifiedResponse
    from agentmux.sessions.base import GenerationConfig

logger = logging.getLogger(__name__)

_THOUGHT_SUBJECT_RE = re.compile(r"^\s*\*\*(.+?)\*\*\s*(.*)$", re.DOTALL)


def parse_thought(text: str) -> tuple[str, str]:
    """Split ``**Subject** description`` thought text; no subject yields ``""``."""
    match = _THOUGHT_SUBJECT_RE.match(text)
    if match is None:
        return "", text.strip()
    return match.group(1).strip(), match.group(2).strip()


def delta_events(
    delta: UnifiedResponse, *, session_id: str | None = None
) -> Iterator[ChatStreamEvent]:
    """Events for one streamed delta, in part order."""
    for content in delta.content:
        for part in content.parts:
            event = _part_event(part, delta.provider, session_id)
            if event is not None:
                yield event


def _part_event(
    part: Part, provider: AIProvider, session_id: str | None
) -> ChatStreamEvent | None:
    if part.function_call is not None:
        call = part.function_call
        return ToolCallEvent(
            provider=provider,
            session_id=session_id,
            call_id=call.id or f"{call.name}-{int(time.time() * 1000)}-{secrets.token_hex(4)}",
            name=call.name,
            args=dict(call.args),
        )
    if not part.text:
        return None
    if part.thought:
        subject, description = parse_thought(part.text)
        return ThoughtEvent(
            provider=provider, session_id=session_id, subject=subject, description=description
        )
    return ContentEvent(provider=provider, session_id=session_id, text=part.text)


def _error_event(
    exc: BaseException, provider: AIProvider, session_id: str | None
) -> ErrorEvent:
    status_code = None
    recoverable = False
    for e in _walk_exception_chain(exc):
        if isinstance(e, APIError):
            status_code = e.status_code
            recoverable = bool(e.retryable)
            break
    code = exc.code if isinstance(exc, AgentmuxError) else "UNKNOWN_ERROR"
    return ErrorEvent(
        provider=provider,
        session_id=session_id,
        message=str(exc),
        code=code,
        status_code=status_code,
        recoverable=recoverable,
    )


async def response_events(
    deltas: AsyncGenerator[UnifiedResponse, None],
    *,
    provider: AIProvider,
    model: str,
    session_id: str | None = None,
    timeout_s: float | None = None,
) -> AsyncIterator[ChatStreamEvent]:
    """Wrap *deltas* in start/end framing, mapping failures to terminal events.

    Token cancellation becomes ``CancelledEvent``; cancellation of the
    consuming task itself is re-raised.
    """
    yield StartEvent(provider=provider, session_id=session_id, model=model)
    chunks: list[UnifiedResponse] = []
    try:
        async with aclosing(deltas):
            async for delta in deltas:
                chunks.append(delta)
                for event in delta_events(delta, session_id=session_id):
                    yield event
    except asyncio.CancelledError as exc:
        task = asyncio.current_task()
        if task is not None and task.cancelling():
            raise
        reason = str(exc.args[0]) if exc.args and exc.args[0] else "user"
        logger.debug("Stream for %s cancelled (%s)", session_id, reason)
        yield CancelledEvent(provider=provider, session_id=session_id, reason=reason)
        return
    except (ChatSessionTimeoutError, RequestTimeoutError):
        yield TimeoutEvent(provider=provider, session_id=session_id, timeout_s=timeout_s)
        yield CancelledEvent(provider=provider, session_id=session_id, reason="timeout")
        return
    except Exception as exc:
        logger.debug("Stream for %s failed: %s", session_id, exc)
        yield _error_event(exc, provider, session_id)
        return

    finish = next((c.finish_reason for c in reversed(chunks) if c.finish_reason), None)
    usage = ChatSession.get_final_usage_metadata(chunks)
    yield EndEvent(
        provider=provider,
        session_id=session_id,
        reason=(finish or FinishReason.STOP).value,
        tokens_used=None
        if usage is None
        else TokenCount(
            input=usage.prompt_token_count,
            output=usage.candidates_token_count,
            total=usage.total_token_count,
        ),
    )


def session_events(
    session: ChatSession,
    message: str | list[Part] | Content,
    config: GenerationConfig | None = None,
    *,
    token: CancelToken | None = None,
    timeout_s: float | None = None,
) -> AsyncIterator[ChatStreamEvent]:
    """Stream one exchange on *session* as events.

    Request validation errors raise here, before any event is produced.
    """
    deltas = session.send_message_stream(message, config, token=token, timeout_s=timeout_s)
    return response_events(
        deltas,
        provider=session.provider,
        model=session.model,
        session_id=session.session_id,
        timeout_s=timeout_s if timeout_s is not None else session.timeout_s,
    )
