"""
relaycord/discord/client.py

The discord.py bot: wires the relay components together, exposes /status and
owns the shared AsyncIOScheduler (heartbeat, scheduled tasks, log flushing).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import discord
from discord.ext import commands
import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from relaycord.config.tasks import load_scheduled_tasks, parse_cron
from relaycord.health import StatusReporter, format_status
from relaycord.llm.client import BackendClient
from relaycord.logs.conversation import FLUSH_INTERVAL_SECONDS, ConversationLog
from relaycord.media.attachments import AttachmentProcessor, PillowCompressor
from relaycord.media.voice import VoiceTranscriber
from relaycord.relay.guard import GuardPolicy, LoopGuard
from relaycord.relay.handler import EventHandler
from relaycord.relay.heartbeat import HeartbeatScheduler
from relaycord.relay.orchestrator import Orchestrator, RelaySettings

from .errors import handle_app_command_error
from .platform import DiscordPlatform, to_inbound_event

SHUTDOWN_GRACE_SECONDS = 5.0


class RelayBot(commands.Bot):
    def __init__(self, config: dict[str, Any]):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.dm_messages = True
        super().__init__(intents=intents, command_prefix=None)

        self.config = config
        self.scheduler = AsyncIOScheduler()
        self.platform = DiscordPlatform(self)
        self.http_client = httpx.AsyncClient(follow_redirects=True)

        self.backend = BackendClient(
            base_url=config["backend_base_url"],
            session_id=config["backend_session_id"],
            model=config.get("backend_model") or "",
            timeout=float(config["backend_timeout_seconds"]),
            max_tokens=int(config["max_tokens"]),
            temperature=float(config["temperature"]),
        )
        self.conversation_log = ConversationLog(config["conversation_log_dir"])
        self.guard = LoopGuard(max_consecutive_bot_replies=int(config["max_consecutive_bot_replies"]))
        self.policy = GuardPolicy.from_config(config)

        compressor = PillowCompressor() if config.get("enable_image_compression") else None
        self.attachments = AttachmentProcessor(http_client=self.http_client, compressor=compressor)

        self.transcriber: Optional[VoiceTranscriber] = None
        if config.get("openai_api_key"):
            self.transcriber = VoiceTranscriber(config["openai_api_key"], http_client=self.http_client)
            logging.info("🎤 Voice transcription enabled (OpenAI Whisper)")
        else:
            logging.info("🎤 Voice transcription disabled (no OPENAI_API_KEY)")

        self.orchestrator = Orchestrator(
            self.backend,
            self.platform,
            RelaySettings.from_config(config),
            attachments=self.attachments,
            conversation_log=self.conversation_log,
            guard=self.guard,
        )
        self.handler = EventHandler(
            self.orchestrator,
            self.guard,
            self.policy,
            channel_id=config.get("channel_id"),
            transcriber=self.transcriber,
        )
        self.heartbeat: Optional[HeartbeatScheduler] = None
        if config.get("enable_heartbeat_timer"):
            self.heartbeat = HeartbeatScheduler(
                self.orchestrator.run_heartbeat,
                self.scheduler,
                timezone_name=config["timezone"],
            )
        self.status_reporter = StatusReporter(self.backend, self.platform, config, self.heartbeat)
        self._closing = False

        self._register_commands()

    # ── Slash commands ───────────────────────────────────────────────────────

    def _register_commands(self) -> None:
        @self.tree.command(name="status", description="Show bot and backend health")
        async def status_command(interaction: discord.Interaction) -> None:
            await interaction.response.defer(ephemeral=True, thinking=True)
            status = await self.status_reporter.status()
            await interaction.followup.send(format_status(status), ephemeral=True)

        @self.tree.error
        async def on_app_command_error(interaction: discord.Interaction, error: Exception) -> None:
            await handle_app_command_error(interaction, error, self, self.config)

    # ── Scheduler ────────────────────────────────────────────────────────────

    def setup_scheduled_tasks(self) -> None:
        tasks = load_scheduled_tasks(self.config)
        for name, tc in tasks.items():
            if not isinstance(tc, dict) or not tc.get("enabled", False):
                continue
            try:
                self.scheduler.add_job(
                    self.orchestrator.run_scheduled_task, "cron", id=f"scheduled_task_{name}",
                    replace_existing=True, args=[name, tc], **parse_cron(tc.get("cron", "0 9 * * *")),
                )
                logging.info("Scheduled task '%s': %s", name, tc.get("cron"))
            except ValueError as e:
                logging.error("Failed to setup task '%s': %s", name, e)

    # ── Events ───────────────────────────────────────────────────────────────

    async def on_ready(self) -> None:
        logging.info("🤖 Logged in as %s (id=%s)", self.user, self.user.id if self.user else "?")
        await self.tree.sync()
        logging.info("Synced %d slash commands", len(self.tree.get_commands()))
        if not self.scheduler.running:
            self.scheduler.start()
            self.setup_scheduled_tasks()
            self.scheduler.add_job(
                self.conversation_log.flush, "interval", seconds=FLUSH_INTERVAL_SECONDS,
                id="conversation_log_flush", replace_existing=True,
            )
            logging.info("Scheduler started")
        if self.heartbeat is not None and not self.heartbeat.running:
            self.heartbeat.start()
            logging.info("🜂 Heartbeat timer started")

    async def on_message(self, message: discord.Message) -> None:
        if self._closing:
            return
        ref = message.reference
        if ref is not None and ref.resolved is None and ref.message_id:
            try:
                ref.resolved = await message.channel.fetch_message(ref.message_id)
            except discord.HTTPException as e:
                logging.debug("Could not fetch referenced message %s: %s", ref.message_id, e)

        self.platform.remember(message)
        event = to_inbound_event(message, self.user)
        await self.handler.handle(event, self.user.id if self.user else 0)

    # ── Shutdown ─────────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        if self._closing:
            return
        self._closing = True
        logging.info("Shutting down...")
        if self.heartbeat is not None:
            self.heartbeat.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.handler.drain(SHUTDOWN_GRACE_SECONDS)
        await self.conversation_log.close()
        await self.backend.aclose()
        if self.transcriber is not None:
            await self.transcriber.aclose()
        await self.http_client.aclose()
        await self.close()
        logging.info("Shutdown complete")
