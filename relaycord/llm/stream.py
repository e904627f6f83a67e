"""
relaycord/llm/stream.py

Typed stream events and the reassembler that turns an event sequence into a
single reply.

The backend emits server-sent events whose `data` is sometimes a bare string and
sometimes an object carrying the text under `chunk` or `content`. Those shapes
are resolved once, in normalize_event(); everything downstream only sees the
dataclasses below.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Optional, Union

from .errors import LLMError


@dataclass(frozen=True)
class TokenUsage:
    prompt: int = 0
    completion: int = 0
    total: int = 0


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: Any = field(default_factory=dict)


@dataclass(frozen=True)
class ThinkingEvent:
    text: str


@dataclass(frozen=True)
class ContentEvent:
    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    call: ToolCall


@dataclass(frozen=True)
class ContentResetEvent:
    reason: str = "unknown"


@dataclass(frozen=True)
class DoneEvent:
    response: Optional[str] = None  # authoritative final text, when the backend sends one
    usage: Optional[TokenUsage] = None


StreamEvent = Union[ThinkingEvent, ContentEvent, ToolCallEvent, ContentResetEvent, DoneEvent]


def _text_of(data: Any) -> str:
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        value = data.get("chunk") or data.get("content") or ""
        return value if isinstance(value, str) else str(value)
    return ""


def parse_usage(data: Any) -> Optional[TokenUsage]:
    """Read `usage` (OpenAI-style field names) or the older `tokens` object; `usage` wins."""
    if not isinstance(data, dict):
        return None
    usage = data.get("usage")
    if isinstance(usage, dict):
        return TokenUsage(
            prompt=int(usage.get("prompt_tokens") or 0),
            completion=int(usage.get("completion_tokens") or 0),
            total=int(usage.get("total_tokens") or 0),
        )
    tokens = data.get("tokens")
    if isinstance(tokens, dict):
        return TokenUsage(
            prompt=int(tokens.get("prompt") or 0),
            completion=int(tokens.get("completion") or 0),
            total=int(tokens.get("total") or 0),
        )
    return None


def normalize_event(event: str, data: Any) -> Optional[StreamEvent]:
    """
    Convert one raw (event name, decoded data) pair into a StreamEvent.
    Returns None for unknown or empty events.
    """
    kind = (event or "").strip()
    if kind == "thinking":
        text = _text_of(data)
        return ThinkingEvent(text) if text else None
    if kind == "content":
        text = _text_of(data)
        return ContentEvent(text) if text else None
    if kind == "content_reset":
        reason = data.get("reason") if isinstance(data, dict) else None
        return ContentResetEvent(str(reason or "unknown"))
    if kind == "tool_call":
        if not isinstance(data, dict):
            return None
        return ToolCallEvent(ToolCall(name=str(data.get("name") or "unknown"), arguments=data.get("arguments") or {}))
    if kind == "done":
        response = data.get("response") if isinstance(data, dict) else None
        if not isinstance(response, str) or not response.strip():
            response = None
        return DoneEvent(response=response, usage=parse_usage(data))
    logging.debug("Ignoring unknown stream event %r", event)
    return None


@dataclass
class AssembledReply:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    thinking: str = ""
    was_reset: bool = False
    completed: bool = False  # True only when a `done` event arrived

    @property
    def was_truncated_or_reset(self) -> bool:
        return self.was_reset or not self.completed


async def assemble(stream: AsyncIterable[StreamEvent]) -> AssembledReply:
    """
    Consume a stream of events and build the final reply.

    - `content` deltas are concatenated in arrival order.
    - `content_reset` discards everything accumulated so far.
    - `tool_call` records are collected without touching the text.
    - `done` may carry an authoritative `response`/usage which overrides the
      accumulated values, even when they differ.

    A backend error after the first event ends the stream early and returns what
    was accumulated (`completed` stays False). An error before any event means
    the turn never started and is re-raised.
    """
    reply = AssembledReply()
    parts: list[str] = []
    received = 0

    try:
        async for event in stream:
            received += 1
            if isinstance(event, ContentEvent):
                parts.append(event.text)
            elif isinstance(event, ThinkingEvent):
                reply.thinking += event.text
            elif isinstance(event, ContentResetEvent):
                logging.info(
                    "🔄 Content reset: discarding %d chars (reason: %s)",
                    sum(len(p) for p in parts), event.reason,
                )
                parts.clear()
                reply.was_reset = True
            elif isinstance(event, ToolCallEvent):
                logging.info("🔧 Tool call: %s", event.call.name)
                reply.tool_calls.append(event.call)
            elif isinstance(event, DoneEvent):
                accumulated = "".join(parts)
                if event.response is not None and event.response != accumulated:
                    logging.info(
                        "📋 Using authoritative done.response (%d chars) over accumulated content (%d chars)",
                        len(event.response), len(accumulated),
                    )
                    parts = [event.response]
                if event.usage is not None:
                    reply.usage = event.usage
                reply.completed = True
    except LLMError as e:
        if not received:
            raise
        logging.warning("Stream terminated early after %d events: %s", received, e)

    reply.text = "".join(parts)
    return reply
