"""
relaycord/relay/orchestrator.py

Message orchestration: turns an inbound event (or a timer/task trigger) into a
backend request, collects the reply and hands it back for chunked delivery.

Failures never escape to the platform layer. Backend errors become either a
short user-facing notice or silence, depending on `surface_errors`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from relaycord.llm.client import BackendClient, OutboundRequest
from relaycord.llm.errors import LLMError, error_messages, format_user_friendly_error, parse_error_message
from relaycord.llm.stream import assemble
from relaycord.logs.conversation import ConversationLog
from relaycord.media.attachments import AttachmentProcessor

from .chunker import CHUNK_DELAY_SECONDS, DISCORD_SAFE_LIMIT, chunk_text, send_chunks
from .guard import LoopGuard, is_farewell
from .models import DeliveryTarget, HeartbeatResult, InboundEvent, MessageKind, Platform

TYPING_REFRESH_SECONDS = 8.0
HEARTBEAT_CONTEXT_TURNS = 3
TURN_TEXT_LIMIT = 500

DM_DENIAL = "❌ Sorry, I can only receive DMs from the authorized user."
EMPTY_REPLY_NOTICE = "Beep boop. I thought about your message but forgot to respond 🤔 - please send it again!"

TASK_ACTION_CONTEXT = {
    "user_reminder": "**Delivery:** This is a user reminder. Your response will be sent as a DM to the user.",
    "channel_post": "**Delivery:** This is a channel post. Your response will be posted to the designated channel.",
    "self_task": "**Delivery:** This is an autonomous self-task. Perform the task using your tools and respond with any results or notes.",
}

_DECISION_BLOCK = re.compile(r"<decision>([\s\S]*?)</decision>", re.IGNORECASE)
_DECISION_TARGET = re.compile(r"target:\s*(dm|channel)", re.IGNORECASE)

# strftime patterns per locale; language-only keys are the fallback.
# strftime names days and months in English, so other languages stay numeric.
SHORT_FORMATS = {
    "en-US": "%a, %m/%d, %H:%M",
    "en-GB": "%a, %d/%m, %H:%M",
    "en": "%a, %m/%d, %H:%M",
    "de": "%d.%m., %H:%M",
    "fr": "%d/%m %H:%M",
    "es": "%d/%m, %H:%M",
}
LONG_FORMATS = {
    "en-US": "%A, %B %d, %Y, %H:%M",
    "en-GB": "%A, %d %B %Y, %H:%M",
    "en": "%A, %B %d, %Y, %H:%M",
    "de": "%d.%m.%Y, %H:%M",
    "fr": "%d/%m/%Y %H:%M",
    "es": "%d/%m/%Y, %H:%M",
}


def format_timestamp(tz_name: str, locale: str, now: datetime | None = None, long: bool = False) -> str:
    """
    Render `now` in the configured timezone. Raises KeyError for an unknown
    locale and ZoneInfoNotFoundError/ValueError for an unknown timezone.

    Day and month names are English; non-English locales use numeric dates.
    """
    table = LONG_FORMATS if long else SHORT_FORMATS
    pattern = table.get(locale) or table[locale.split("-")[0]]
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(tz_name)).strftime(pattern)


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def parse_decision(content: str, message_target: Optional[str]) -> tuple[str, DeliveryTarget]:
    """
    Strip any `<decision>` block from the heartbeat text. An explicit
    message_target wins; otherwise `target:` inside the block is used; the
    default is the channel.
    """
    target = message_target
    match = _DECISION_BLOCK.search(content)
    if match:
        logging.warning("⚠️ Decision block found in heartbeat content - stripping it")
        if not target:
            found = _DECISION_TARGET.search(match.group(1))
            if found:
                target = found.group(1).lower()
        content = _DECISION_BLOCK.sub("", content).strip()
    return content, DeliveryTarget.DM if target == "dm" else DeliveryTarget.CHANNEL


@dataclass
class RelaySettings:
    session_id: str = "discord-bot"
    max_tokens: int = 8192
    temperature: float = 0.7
    surface_errors: bool = False
    use_sender_prefix: bool = False
    timezone: str = "America/New_York"
    locale: str = "en-US"
    allowed_dm_user_id: Optional[int] = None
    channel_id: Optional[int] = None
    heartbeat_log_channel_id: Optional[int] = None
    enable_autonomous: bool = False
    chunk_limit: int = DISCORD_SAFE_LIMIT
    chunk_delay: float = CHUNK_DELAY_SECONDS

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "RelaySettings":
        return cls(
            session_id=config.get("backend_session_id") or "discord-bot",
            max_tokens=int(config.get("max_tokens") or 8192),
            temperature=float(config.get("temperature", 0.7)),
            surface_errors=bool(config.get("surface_errors")),
            use_sender_prefix=bool(config.get("use_sender_prefix")),
            timezone=config.get("timezone") or "America/New_York",
            locale=config.get("locale") or "en-US",
            allowed_dm_user_id=config.get("allowed_dm_user_id"),
            channel_id=config.get("channel_id"),
            heartbeat_log_channel_id=config.get("heartbeat_log_channel_id"),
            enable_autonomous=bool(config.get("enable_autonomous")),
        )


class Orchestrator:
    def __init__(
        self,
        backend: BackendClient,
        platform: Platform,
        settings: RelaySettings,
        attachments: AttachmentProcessor | None = None,
        conversation_log: ConversationLog | None = None,
        guard: LoopGuard | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.platform = platform
        self.settings = settings
        self.attachments = attachments
        self.conversation_log = conversation_log
        self.guard = guard
        self._sleep = sleep

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _timestamp(self, long: bool = False) -> str:
        try:
            return format_timestamp(self.settings.timezone, self.settings.locale, long=long)
        except Exception as e:  # noqa: BLE001
            logging.warning("⚠️ Timestamp generation failed: %s", e)
            return ""

    def is_dm_denied(self, event: InboundEvent) -> bool:
        allowed = self.settings.allowed_dm_user_id
        return event.is_direct_message and allowed is not None and event.author_id != allowed

    def build_content(
        self,
        event: InboundEvent,
        kind: MessageKind,
        message: str,
        attachment_info: str = "",
        context: Optional[str] = None,
        timestamp: str = "",
    ) -> str:
        if not self.settings.use_sender_prefix:
            body = f"{message}{attachment_info}"
            return f"{context}\n\n{body}" if context else body

        stamp = f", time={timestamp}" if timestamp else ""
        receipt = f"{event.author_name} (id={event.author_id}{stamp})"
        where = "DM" if event.is_direct_message else f"#{event.channel_name} (channel_id={event.channel_id})"
        if kind is MessageKind.MENTION:
            header = f"[{receipt} sent a message mentioning you in {where}]"
        elif kind is MessageKind.REPLY:
            header = f"[{receipt} replied to you in {where}]"
        elif kind is MessageKind.DM:
            header = f"[{receipt} sent you a direct message]"
        else:
            header = f"[{receipt} sent a message in {where}]"
        body = f"{header} {message}{attachment_info}"
        return f"{context}\n\n{body}" if context else body

    async def _typing(self, destination: Any) -> None:
        try:
            await self.platform.send_typing(destination)
        except Exception as e:  # noqa: BLE001
            logging.debug("Error refreshing typing indicator: %s", e)

    async def _keep_typing(self, destination: Any) -> None:
        while True:
            await asyncio.sleep(TYPING_REFRESH_SECONDS)
            await self._typing(destination)

    async def _deliver(self, text: str, send: Callable[[str], Awaitable[Any]],
                       reply: Callable[[str], Awaitable[Any]] | None = None) -> int:
        chunks = chunk_text(text, self.settings.chunk_limit)
        await send_chunks(chunks, send, reply=reply, delay=self.settings.chunk_delay, sleep=self._sleep)
        return len(chunks)

    # ── Inbound turns ────────────────────────────────────────────────────────

    async def handle_turn(
        self,
        event: InboundEvent,
        kind: MessageKind,
        context: Optional[str] = None,
        override_content: Optional[str] = None,
    ) -> str:
        """
        Run one request/response turn for an inbound event and return the text
        to deliver. An empty string means "send nothing".
        """
        if self.is_dm_denied(event):
            logging.info("🔒 DM restriction: ignoring DM from %s", event.author_id)
            return DM_DENIAL

        message = override_content or event.text_content
        timestamp = self._timestamp()

        attachment_info = ""
        media: Optional[tuple[str, str]] = None
        if self.attachments is not None and event.attachments:
            attachment_info = await self.attachments.summarize_all(event.attachments)
            media = await self.attachments.load_image(event.attachments)

        content = self.build_content(event, kind, message, attachment_info, context, timestamp)

        if self.conversation_log is not None:
            self.conversation_log.log_user_message(
                message, event.channel_id, event.channel_name, event.author_id,
                event.author_name, event.id, event.is_direct_message, len(event.attachments),
            )

        request = OutboundRequest(
            messages=[{"role": "user", "content": content}],
            session_id=self.settings.session_id,
            message_type="inbox",
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
            media_data=media[0] if media else None,
            media_type=media[1] if media else None,
        )

        logging.info(
            "🛜 Sending %s message from %s to backend (session=%s, %d chars%s)",
            kind.name, event.author_name, request.session_id, len(content), ", +image" if media else "",
        )

        typing: Optional[asyncio.Task] = None
        try:
            destination = await self.platform.fetch_channel(event.channel_id)
        except Exception as e:  # noqa: BLE001
            logging.debug("No typing indicator for channel %s: %s", event.channel_id, e)
            destination = None
        if destination is not None:
            await self._typing(destination)
            typing = asyncio.create_task(self._keep_typing(destination))

        try:
            reply = await assemble(self.backend.chat_stream(request))
        except LLMError as e:
            log_message, user_message = error_messages(e)
            logging.error("Backend request failed: %s", log_message)
            return user_message if self.settings.surface_errors else ""
        except Exception as e:  # noqa: BLE001
            logging.exception("Unexpected error while handling message %s", event.id)
            return format_user_friendly_error(e) if self.settings.surface_errors else ""
        finally:
            if typing is not None:
                typing.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await typing

        if reply.tool_calls:
            logging.info("🔧 Used %d tool(s): %s", len(reply.tool_calls), ", ".join(c.name for c in reply.tool_calls))
        if reply.usage:
            logging.info(
                "📊 Usage: %d prompt + %d completion = %d total",
                reply.usage.prompt, reply.usage.completion, reply.usage.total,
            )
        if not reply.completed:
            logging.warning("⚠️ Stream ended without a done event; using partial reply (%d chars)", len(reply.text))

        text = reply.text
        if not text.strip():
            logging.warning("⚠️ Empty reply for message %s", event.id)
            return EMPTY_REPLY_NOTICE if self.settings.surface_errors else ""

        if self.conversation_log is not None:
            self.conversation_log.log_bot_response(text, event.channel_id, event.channel_name)
            usage = None
            if reply.usage:
                usage = {"prompt": reply.usage.prompt, "completion": reply.usage.completion, "total": reply.usage.total}
            self.conversation_log.log_turn(content, text, context, event.channel_id, event.channel_name, usage)
        return text

    async def dispatch(
        self,
        event: InboundEvent,
        kind: MessageKind,
        context: Optional[str] = None,
        override_content: Optional[str] = None,
        self_id: int = 0,
    ) -> bool:
        """
        handle_turn() plus bookkeeping and delivery. The first chunk is sent as a
        reply to the triggering message. Returns True if anything was sent.
        """
        text = await self.handle_turn(event, kind, context, override_content)
        if not text:
            return False

        if self.guard is not None and self.settings.enable_autonomous and text != DM_DENIAL:
            await self.guard.record_bot_reply(event.channel_id, self_id, was_farewell=is_farewell(text))

        try:
            destination = await self.platform.fetch_channel(event.channel_id)
            count = await self._deliver(
                text,
                send=lambda chunk: self.platform.send(destination, chunk),
                reply=lambda chunk: self.platform.reply(event, chunk),
            )
        except Exception:  # noqa: BLE001
            logging.exception("❌ Error sending chunked message")
            return False
        logging.info("📨 Message sent in %d chunk(s) (total: %d chars)", count, len(text))
        return True

    # ── Heartbeat ────────────────────────────────────────────────────────────

    async def _recent_context(self) -> str:
        turns = []
        if self.conversation_log is not None:
            turns = await self.conversation_log.recent_turns(HEARTBEAT_CONTEXT_TURNS)
        if not turns:
            return "\n\n## Recent Conversation Context:\nNo recent conversations found in today's logs.\n\n"

        lines = [f"\n\n## Recent Conversation Context (Last {len(turns)} Turns):\n"]
        for idx, turn in enumerate(turns, start=1):
            try:
                when = format_timestamp(self.settings.timezone, self.settings.locale, now=turn.timestamp)
            except Exception:  # noqa: BLE001
                when = turn.timestamp.strftime("%Y-%m-%d %H:%M")
            lines.append(f"### Turn {idx} ({when}):")
            lines.append(f"**User:** {_truncate(turn.user, TURN_TEXT_LIMIT)}\n")
            lines.append(f"**Assistant:** {_truncate(turn.assistant, TURN_TEXT_LIMIT)}\n")
        return "\n".join(lines)

    def _heartbeat_prompt(self, now_str: str, context: str) -> str:
        return (
            "# Autonomous Heartbeat\n\n"
            f"**Current Date & Time:** {now_str}\n\n"
            "This is your scheduled heartbeat. Decide whether there is something worth doing "
            "or saying right now. You may use your tools, or do nothing at all.\n\n"
            "## Message Delivery Options:\n"
            "- **DM** (target: dm) sends a private message to the configured user.\n"
            "- **Channel** (target: channel) posts in the heartbeat log channel. This is the default.\n\n"
            "Include your choice in a decision block:\n"
            "<decision>\nsend_message: true\ntarget: channel\n</decision>\n\n"
            "If you only performed background actions and have nothing to say, keep your text empty."
            f"{context}"
        )

    async def heartbeat_turn(self, channel_id: int, channel_name: str = "heartbeat") -> HeartbeatResult:
        """
        Ask the backend for an autonomous heartbeat message. Backend errors
        propagate to the caller.
        """
        logging.info("🜂 Generating heartbeat...")
        prompt = self._heartbeat_prompt(self._timestamp(long=True) or "unknown", await self._recent_context())
        request = OutboundRequest(
            messages=[{"role": "system", "content": prompt}],
            session_id=self.settings.session_id,
            message_type="system",
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
        )
        response = await self.backend.chat(request)
        content, target = parse_decision(response.content or "", response.message_target)

        if response.tool_calls:
            logging.info(
                "🔧 [HEARTBEAT] Used %d tool(s): %s",
                len(response.tool_calls), ", ".join(c.name for c in response.tool_calls),
            )

        if not response.send_message:
            logging.info("🔕 [HEARTBEAT → BACKGROUND] Actions completed, no message to user")
            if content and self.conversation_log is not None:
                self.conversation_log.log_heartbeat(f"[BACKGROUND] {content}", channel_id, channel_name)
            return HeartbeatResult()
        if not content.strip():
            logging.info("💤 [HEARTBEAT → NONE] No action taken")
            return HeartbeatResult()

        if self.conversation_log is not None:
            self.conversation_log.log_heartbeat(content, channel_id, channel_name)
        logging.info("💬 [HEARTBEAT → %s] %s", target.name, content[:100])
        return HeartbeatResult(content=content, target=target)

    async def _dm_destination(self) -> Optional[Any]:
        user_id = self.settings.allowed_dm_user_id
        if not user_id:
            return None
        try:
            return await self.platform.create_dm(user_id)
        except Exception as e:  # noqa: BLE001
            logging.error("Failed to create DM channel for %s: %s", user_id, e)
            return None

    async def run_heartbeat(self) -> None:
        """
        Fire action for the heartbeat scheduler.

        The backend is only called when the reply has somewhere to go: a
        heartbeat/default channel, or the allow-listed DM user.
        """
        channel_id = self.settings.heartbeat_log_channel_id or self.settings.channel_id
        channel = await self.platform.fetch_channel(channel_id) if channel_id else None
        if channel is None:
            if channel_id:
                logging.warning("🜂 Heartbeat channel %s not available", channel_id)
            if not self.settings.allowed_dm_user_id:
                logging.info("🜂 No heartbeat channel or DM user available; skipping backend call")
                return

        name = getattr(channel, "name", None) or ("heartbeat" if channel is not None else "DM")
        result = await self.heartbeat_turn(channel_id or 0, name)
        if not result.content:
            return

        destination = channel
        if result.target is DeliveryTarget.DM:
            dm = await self._dm_destination()
            if dm is not None:
                destination = dm
            else:
                logging.warning("🜂 Heartbeat requested DM but no DM is available, falling back to channel")
        if destination is None:
            logging.warning("🜂 Heartbeat targeted %s but no channel is available; dropping message", result.target.name)
            return

        count = await self._deliver(result.content, send=lambda chunk: self.platform.send(destination, chunk))
        logging.info("🜂 Heartbeat message sent in %d chunk(s) to %s", count, result.target.name)

    # ── Scheduled tasks ──────────────────────────────────────────────────────

    async def run_task(self, name: str, description: str = "", action_type: Optional[str] = None) -> str:
        """Stream a `task` request and return the reply text, or "" on failure/empty."""
        logging.info("📅 Executing scheduled task: %s", name)
        if self.conversation_log is not None:
            self.conversation_log.log_task(name, description or name, action_type)

        lines = [
            f"# Scheduled Task: {name}",
            "",
            f"**Current Date & Time:** {self._timestamp(long=True) or 'unknown'}",
            f"**Task:** {name}",
        ]
        if description:
            lines.append(f"**Description:** {description}")
        if action_type in TASK_ACTION_CONTEXT:
            lines.append(TASK_ACTION_CONTEXT[action_type])
        lines += [
            "",
            "This is a scheduled task that has been triggered. Please execute it now, using your tools as needed.",
            "",
            "Your text response is what will be delivered to Discord.",
        ]

        request = OutboundRequest(
            messages=[{"role": "system", "content": "\n".join(lines)}],
            session_id=self.settings.session_id,
            message_type="task",
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
        )
        try:
            reply = await assemble(self.backend.chat_stream(request))
        except LLMError as e:
            logging.error("📅 Task '%s' failed: %s", name, parse_error_message(e))
            return ""

        if not reply.text.strip():
            logging.warning("⚠️ Empty task response for: %s", name)
            return ""
        if self.conversation_log is not None:
            self.conversation_log.log_task_response(name, reply.text)
        logging.info("📅 ✅ Task completed: %s (%d chars)", name, len(reply.text))
        return reply.text

    async def run_scheduled_task(self, name: str, task_config: dict[str, Any]) -> None:
        """Run a configured task and deliver its result according to `action_type`."""
        action_type = task_config.get("action_type") or "channel_post"
        text = await self.run_task(name, task_config.get("description", ""), action_type)
        if not text:
            return

        if action_type == "user_reminder":
            destination = await self._dm_destination()
            if destination is None:
                logging.warning("Task '%s': no DM user available, result not delivered", name)
                return
        else:
            if action_type == "self_task":
                channel_id = self.settings.heartbeat_log_channel_id or self.settings.channel_id
            else:
                channel_id = task_config.get("channel_id") or self.settings.channel_id
            destination = await self.platform.fetch_channel(channel_id) if channel_id else None
            if destination is None:
                logging.warning("Task '%s': channel %s not found", name, channel_id)
                return

        try:
            count = await self._deliver(text, send=lambda chunk: self.platform.send(destination, chunk))
        except Exception:  # noqa: BLE001
            logging.exception("Task '%s': delivery failed", name)
            return
        logging.info("Task '%s' sent (%s, %d chunk(s))", name, action_type, count)
