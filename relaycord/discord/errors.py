"""
Error reporting for the Discord surface.

Failures in slash commands are logged, answered ephemerally, and forwarded as
a DM to the allow-listed user (the bot's owner) when one is configured.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import discord

from relaycord.llm.errors import parse_error_message

COMMAND_FAILURE_REPLY = "⚠️ That command failed. Try `/status` to check whether the backend is reachable."


def format_error_report(error: Exception, where: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return "\n".join((
        "🤖 **Relay error**",
        f"⏰ {now.strftime('%Y-%m-%d %H:%M:%S %Z')}",
        f"📍 {where or 'unknown'}",
        f"> {parse_error_message(error)}",
    ))


async def notify_owner_error(
    discord_bot: discord.Client,
    config: dict[str, Any],
    error: Exception,
    where: str = "",
) -> bool:
    """DM an error report to `allowed_dm_user_id`. Returns True if it was delivered."""
    owner_id = config.get("allowed_dm_user_id")
    if not owner_id:
        return False
    try:
        owner = discord_bot.get_user(owner_id) or await discord_bot.fetch_user(owner_id)
        await owner.send(format_error_report(error, where))
    except discord.HTTPException as e:
        logging.warning("Could not DM error report to %s: %s", owner_id, e)
        return False
    return True


async def handle_app_command_error(
    interaction: discord.Interaction,
    error: Exception,
    discord_bot: discord.Client,
    config: dict[str, Any],
) -> None:
    command = getattr(interaction.command, "name", None) or "unknown"
    logging.error("/%s failed: %s", command, error, exc_info=error)
    await notify_owner_error(discord_bot, config, error, f"/{command} (user {interaction.user.id})")

    respond = interaction.followup.send if interaction.response.is_done() else interaction.response.send_message
    try:
        await respond(COMMAND_FAILURE_REPLY, ephemeral=True)
    except discord.HTTPException as e:
        logging.warning("Could not report /%s failure to the user: %s", command, e)
