"""
relaycord/relay/handler.py

Inbound pipeline, independent of the live Discord client:

    channel filter → self filter → voice note → loop guard → DM allow-list
    → routing → orchestrator dispatch

Every turn runs inside handle(); its task is tracked so shutdown can wait for
in-flight turns.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from relaycord.media.voice import VoiceTranscriber, first_audio_attachment

from .guard import GuardPolicy, LoopGuard
from .models import InboundEvent, MessageKind
from .orchestrator import DM_DENIAL, Orchestrator


def route_event(event: InboundEvent, policy: GuardPolicy) -> Optional[MessageKind]:
    """Pick the message kind for an event, or None when the bot should stay quiet."""
    if event.is_direct_message:
        return MessageKind.DM if policy.respond_to_dms else None
    if policy.respond_to_mentions and (event.mentions_bot or event.has_reference):
        if event.is_reply_to_bot:
            return MessageKind.REPLY
        if event.mentions_bot:
            return MessageKind.MENTION
        return MessageKind.GENERIC
    if policy.respond_to_generic:
        return MessageKind.GENERIC
    return None


class EventHandler:
    def __init__(
        self,
        orchestrator: Orchestrator,
        guard: LoopGuard,
        policy: GuardPolicy,
        channel_id: Optional[int] = None,
        transcriber: VoiceTranscriber | None = None,
    ):
        self.orchestrator = orchestrator
        self.guard = guard
        self.policy = policy
        self.channel_id = channel_id
        self.transcriber = transcriber
        self._in_flight: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def handle(self, event: InboundEvent, self_id: int) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
        try:
            await self._handle(event, self_id)
        except Exception:  # noqa: BLE001
            logging.exception("Error handling message %s", event.id)
        finally:
            if task is not None:
                self._in_flight.discard(task)

    async def _handle(self, event: InboundEvent, self_id: int) -> None:
        if self.channel_id and not event.is_direct_message and event.channel_id != self.channel_id:
            logging.debug("📩 Ignoring message from channel %s (listening on %s)", event.channel_id, self.channel_id)
            return
        if event.is_self or event.author_id == self_id:
            logging.debug("📩 Ignoring message from myself")
            return

        override: Optional[str] = None
        if self.transcriber is not None:
            audio = first_audio_attachment(event.attachments)
            if audio is not None:
                logging.info("🎤 Voice note detected: %s (%s)", audio.name, audio.content_type)
                result = await self.transcriber.transcribe(audio)
                if not result.success:
                    await self.orchestrator.platform.reply(
                        event,
                        f"⚠️ I couldn't transcribe your voice note: {result.error}. "
                        "Please try again or send a text message.",
                    )
                    return
                override = f"[Voice Note] {result.text}"

        decision = await self.guard.decide(event, self_id, self.policy)
        if not decision.should_respond:
            logging.info("🔒 Not responding to %s: %s", event.id, decision.reason)
            return
        logging.info("🔒 Responding to %s: %s", event.id, decision.reason)
        context = None if event.is_direct_message else decision.context

        if self.orchestrator.is_dm_denied(event):
            logging.info("🔒 DM restriction: denying DM from %s", event.author_id)
            await self.orchestrator.platform.reply(event, DM_DENIAL)
            return

        kind = route_event(event, self.policy)
        if kind is None:
            logging.info("📩 Ignoring message %s (no matching response rule)", event.id)
            return

        await self.orchestrator.dispatch(event, kind, context, override, self_id=self_id)

    async def drain(self, timeout: float) -> bool:
        """Wait up to `timeout` seconds for in-flight turns. True if all finished."""
        pending = {t for t in self._in_flight if t is not asyncio.current_task()}
        if not pending:
            return True
        logging.info("Waiting for %d in-flight message(s)...", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logging.warning("%d message(s) still running after %.0fs grace period", len(still_running), timeout)
        return not still_running
