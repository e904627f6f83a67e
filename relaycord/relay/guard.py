"""
relaycord/relay/guard.py

Conversation-loop guard.

Keeps a rolling per-channel activity window and decides, per inbound event,
whether the bot may answer. Its job is to stop bot-to-bot reply chains
(including the bot talking to itself) while leaving DMs, mentions and replies
alone.

All state for a channel is read and written under that channel's lock, so
concurrent events in one channel see a consistent counter.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .models import InboundEvent

FAREWELL_PHRASES = ("gotta go", "catch you later", "step away")

DEFAULT_MAX_CONSECUTIVE_BOT_REPLIES = 3
DEFAULT_CONTEXT_MESSAGES = 10
DEFAULT_HISTORY_SIZE = 50
DEFAULT_RETENTION_SECONDS = 30 * 60
CONTEXT_TEXT_LIMIT = 200


@dataclass(frozen=True)
class GuardPolicy:
    respond_to_dms: bool = False
    respond_to_mentions: bool = False
    respond_to_bots: bool = False
    enable_autonomous: bool = False
    respond_to_generic: bool = False

    @classmethod
    def from_config(cls, config: dict) -> "GuardPolicy":
        return cls(
            respond_to_dms=bool(config.get("respond_to_dms")),
            respond_to_mentions=bool(config.get("respond_to_mentions")),
            respond_to_bots=bool(config.get("respond_to_bots")),
            enable_autonomous=bool(config.get("enable_autonomous")),
            respond_to_generic=bool(config.get("respond_to_generic")),
        )


@dataclass(frozen=True)
class Decision:
    should_respond: bool
    reason: str
    context: Optional[str] = None


@dataclass(frozen=True)
class TrackedMessage:
    author_id: int
    author_name: str
    text: str
    timestamp: float
    is_bot: bool


@dataclass
class ChannelActivityState:
    last_bot_reply_at: Optional[float] = None
    consecutive_bot_replies: int = 0
    recent_messages: deque = field(default_factory=lambda: deque(maxlen=DEFAULT_HISTORY_SIZE))
    farewell_issued: bool = False


def is_farewell(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in FAREWELL_PHRASES)


class LoopGuard:
    def __init__(
        self,
        max_consecutive_bot_replies: int = DEFAULT_MAX_CONSECUTIVE_BOT_REPLIES,
        context_messages: int = DEFAULT_CONTEXT_MESSAGES,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.max_consecutive_bot_replies = max_consecutive_bot_replies
        self.context_messages = context_messages
        self.retention_seconds = retention_seconds
        self.history_size = history_size
        self._clock = clock
        self._states: dict[int, ChannelActivityState] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock(self, channel_id: int) -> asyncio.Lock:
        return self._locks.setdefault(channel_id, asyncio.Lock())

    def _state(self, channel_id: int) -> ChannelActivityState:
        state = self._states.get(channel_id)
        if state is None:
            state = ChannelActivityState(recent_messages=deque(maxlen=self.history_size))
            self._states[channel_id] = state
        return state

    def _evict(self, state: ChannelActivityState, now: float) -> None:
        horizon = now - self.retention_seconds
        while state.recent_messages and state.recent_messages[0].timestamp < horizon:
            state.recent_messages.popleft()

    async def decide(self, event: InboundEvent, self_id: int, policy: GuardPolicy) -> Decision:
        if not policy.enable_autonomous:
            if event.is_bot and not policy.respond_to_bots:
                return Decision(False, "bot author ignored")
            return Decision(True, "legacy policy")

        async with self._lock(event.channel_id):
            now = self._clock()
            state = self._state(event.channel_id)
            self._evict(state, now)
            # Context covers what came before this event.
            prior = list(state.recent_messages)
            state.recent_messages.append(
                TrackedMessage(
                    author_id=event.author_id,
                    author_name=event.author_name,
                    text=event.text_content,
                    timestamp=now,
                    is_bot=event.is_bot,
                )
            )

            if event.is_self or event.author_id == self_id:
                return Decision(False, "own message")

            if not event.is_bot:
                state.consecutive_bot_replies = 0
                state.farewell_issued = False

            if event.is_direct_message:
                if policy.respond_to_dms:
                    return Decision(True, "direct message")
                return Decision(False, "DMs disabled")

            if event.is_bot:
                if not policy.respond_to_bots:
                    return Decision(False, "bot author ignored")
                if state.farewell_issued:
                    state.farewell_issued = False
                    return Decision(False, "conversation closed by farewell")
                if state.consecutive_bot_replies >= self.max_consecutive_bot_replies:
                    return Decision(
                        False,
                        f"bot reply cap reached ({state.consecutive_bot_replies}/{self.max_consecutive_bot_replies})",
                    )
                return Decision(
                    True,
                    f"bot message ({state.consecutive_bot_replies}/{self.max_consecutive_bot_replies} consecutive)",
                    self._format_context(prior),
                )

            addressed = event.mentions_bot or event.is_reply_to_bot
            if policy.respond_to_mentions and addressed:
                return Decision(True, "mention or reply", self._format_context(prior))
            if policy.respond_to_generic:
                return Decision(True, "generic channel message", self._format_context(prior))
            return Decision(False, "not addressed to bot")

    async def record_bot_reply(self, channel_id: int, self_id: int, was_farewell: bool = False) -> None:
        async with self._lock(channel_id):
            state = self._state(channel_id)
            state.consecutive_bot_replies += 1
            state.last_bot_reply_at = self._clock()
            if was_farewell:
                state.farewell_issued = True
                logging.info("👋 Farewell recorded in channel %s; next bot message will be ignored", channel_id)
            logging.debug(
                "Bot %s replied in %s (%d consecutive)",
                self_id, channel_id, state.consecutive_bot_replies,
            )

    def snapshot(self, channel_id: int) -> Optional[ChannelActivityState]:
        return self._states.get(channel_id)

    def _format_context(self, messages: list[TrackedMessage]) -> Optional[str]:
        try:
            recent = messages[-self.context_messages:] if self.context_messages > 0 else []
            if not recent:
                return None
            lines = [f"## Recent channel conversation (last {len(recent)} messages):"]
            for msg in recent:
                stamp = datetime.fromtimestamp(msg.timestamp).strftime("%H:%M")
                text = msg.text.replace("\n", " ")
                if len(text) > CONTEXT_TEXT_LIMIT:
                    text = text[: CONTEXT_TEXT_LIMIT - 3] + "..."
                marker = " [bot]" if msg.is_bot else ""
                lines.append(f"- [{stamp}] {msg.author_name}{marker}: {text}")
            return "\n".join(lines)
        except Exception as e:  # noqa: BLE001
            logging.warning("Failed to format channel context: %s", e)
            return None
