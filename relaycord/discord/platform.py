"""
relaycord/discord/platform.py

discord.py adapter: converts discord.Message into InboundEvent and implements
the Platform protocol the relay core talks to.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import discord

from relaycord.relay.models import Attachment, InboundEvent


def to_inbound_event(message: discord.Message, bot_user: Optional[discord.abc.User]) -> InboundEvent:
    is_dm = message.guild is None
    bot_id = bot_user.id if bot_user else 0

    reply_author_id = None
    ref = message.reference
    if ref is not None and isinstance(ref.resolved, discord.Message):
        reply_author_id = ref.resolved.author.id

    return InboundEvent(
        id=message.id,
        author_id=message.author.id,
        author_name=message.author.name,
        is_bot=message.author.bot,
        is_self=message.author.id == bot_id,
        channel_id=message.channel.id,
        channel_name="DM" if is_dm else getattr(message.channel, "name", None) or "unknown-channel",
        is_direct_message=is_dm,
        mentions_bot=bot_user is not None and bot_user in message.mentions,
        is_reply_to_bot=reply_author_id is not None and reply_author_id == bot_id,
        has_reference=ref is not None,
        text_content=message.content,
        attachments=tuple(
            Attachment(name=a.filename, url=a.url, content_type=a.content_type or "", size=a.size)
            for a in message.attachments
        ),
        timestamp=message.created_at,
    )


class DiscordPlatform:
    """Platform implementation on top of a connected discord.Client."""

    def __init__(self, client: discord.Client):
        self.client = client
        # Inbound messages are kept so replies go to the real discord.Message.
        self._messages: dict[int, discord.Message] = {}
        self._max_messages = 500

    def remember(self, message: discord.Message) -> None:
        self._messages[message.id] = message
        if (n := len(self._messages)) > self._max_messages:
            for mid in sorted(self._messages)[: n - self._max_messages]:
                self._messages.pop(mid, None)

    async def send(self, destination: discord.abc.Messageable, text: str) -> discord.Message:
        return await destination.send(text)

    async def reply(self, event: InboundEvent, text: str) -> discord.Message:
        message = self._messages.get(event.id)
        if message is not None:
            return await message.reply(text)
        channel = await self.fetch_channel(event.channel_id)
        if channel is None:
            raise LookupError(f"channel {event.channel_id} not found")
        return await channel.send(text)

    async def send_typing(self, destination: discord.abc.Messageable) -> None:
        await destination.typing()

    async def fetch_channel(self, channel_id: int) -> Optional[Any]:
        channel = self.client.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await self.client.fetch_channel(channel_id)
        except (discord.NotFound, discord.Forbidden) as e:
            logging.warning("Channel %s not available: %s", channel_id, e)
            return None

    async def create_dm(self, user_id: int) -> discord.DMChannel:
        user = self.client.get_user(user_id) or await self.client.fetch_user(user_id)
        return await user.create_dm()

    def is_connected(self) -> bool:
        return self.client.is_ready() and not self.client.is_closed()
