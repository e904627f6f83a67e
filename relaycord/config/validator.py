"""
Configuration validator.

Validates types, required fields, and common misconfigurations of the merged
(YAML + environment) config mapping.
"""

from __future__ import annotations

import logging
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


logger = logging.getLogger(__name__)

BOOL_KEYS = (
    "respond_to_dms",
    "respond_to_mentions",
    "respond_to_bots",
    "respond_to_generic",
    "enable_autonomous",
    "enable_heartbeat_timer",
    "surface_errors",
    "use_sender_prefix",
    "enable_image_compression",
)
ID_KEYS = ("allowed_dm_user_id", "channel_id", "heartbeat_log_channel_id")
TASK_ACTION_TYPES = ("user_reminder", "channel_post", "self_task")


class ConfigValidationError(Exception):
    """Raised when config validation fails."""
    pass


def validate_config(cfg: dict[str, Any], config_path: str = "config.yaml") -> None:
    """
    Comprehensive validation of the merged configuration.

    Raises ConfigValidationError if validation fails.
    Logs detailed error messages before raising.

    Args:
        cfg: The merged config dictionary
        config_path: Path to the YAML file (for error messages)

    Raises:
        ConfigValidationError: If validation fails
    """
    errors = []
    warnings = []

    # ── Check root structure ────────────────────────────────────────────────
    if not isinstance(cfg, dict):
        errors.append(f"Config root must be a mapping, got {type(cfg).__name__}")
        cfg = {}

    # ── Required keys ───────────────────────────────────────────────────────
    if not cfg.get("bot_token"):
        errors.append("Missing Discord bot token (set DISCORD_TOKEN or 'bot_token')")

    base_url = cfg.get("backend_base_url")
    if not isinstance(base_url, str) or not base_url.startswith(("http://", "https://")):
        errors.append(f"'backend_base_url' must be an http(s) URL, got {base_url!r}")

    # ── Booleans ────────────────────────────────────────────────────────────
    for key in BOOL_KEYS:
        if key in cfg and not isinstance(cfg[key], bool):
            errors.append(f"'{key}' must be boolean, got {type(cfg[key]).__name__}")

    # ── Discord ids ─────────────────────────────────────────────────────────
    for key in ID_KEYS:
        value = cfg.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
            errors.append(f"'{key}' must be a numeric Discord id, got {value!r}")

    # ── Numeric limits ──────────────────────────────────────────────────────
    max_tokens = cfg.get("max_tokens")
    if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0:
        errors.append(f"'max_tokens' must be a positive integer, got {max_tokens!r}")

    temperature = cfg.get("temperature")
    if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
        errors.append(f"'temperature' must be a number, got {temperature!r}")
    elif not 0 <= temperature <= 2:
        warnings.append(f"'temperature' {temperature} is outside the usual 0-2 range")

    timeout = cfg.get("backend_timeout_seconds")
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        errors.append(f"'backend_timeout_seconds' must be a positive number, got {timeout!r}")

    cap = cfg.get("max_consecutive_bot_replies")
    if isinstance(cap, bool) or not isinstance(cap, int) or cap < 0:
        errors.append(f"'max_consecutive_bot_replies' must be a non-negative integer, got {cap!r}")

    # ── Timezone ────────────────────────────────────────────────────────────
    tz = cfg.get("timezone")
    try:
        ZoneInfo(str(tz))
    except (ZoneInfoNotFoundError, ValueError):
        warnings.append(f"Unknown timezone {tz!r}; timestamps will be omitted and heartbeat windows use UTC")

    # ── Feature combinations ────────────────────────────────────────────────
    if cfg.get("respond_to_bots") and not cfg.get("enable_autonomous"):
        warnings.append(
            "'respond_to_bots' is enabled without 'enable_autonomous'; "
            "bot-to-bot loops are not limited"
        )
    if cfg.get("enable_heartbeat_timer") and not (
        cfg.get("heartbeat_log_channel_id") or cfg.get("channel_id")
    ):
        warnings.append("Heartbeat timer enabled but no heartbeat/default channel id is configured")

    # ── Validate scheduled_tasks section ───────────────────────────────────
    if "scheduled_tasks" in cfg:
        tasks = cfg["scheduled_tasks"]
        if not isinstance(tasks, dict):
            errors.append(
                f"'scheduled_tasks' must be a mapping, got {type(tasks).__name__}"
            )
        else:
            for task_name, task_config in tasks.items():
                if task_config is None:
                    errors.append(f"Task '{task_name}' config is empty/null")
                elif not isinstance(task_config, dict):
                    errors.append(
                        f"Task '{task_name}' config must be a mapping, "
                        f"got {type(task_config).__name__}"
                    )
                elif task_config.get("enabled"):
                    if "cron" not in task_config:
                        errors.append(f"Enabled task '{task_name}' missing required field: 'cron'")
                    action = task_config.get("action_type", "channel_post")
                    if action not in TASK_ACTION_TYPES:
                        errors.append(
                            f"Task '{task_name}' has unknown action_type '{action}'. "
                            f"Valid: {', '.join(TASK_ACTION_TYPES)}"
                        )

    # ── Log warnings ────────────────────────────────────────────────────────
    for warning in warnings:
        logger.warning("Config warning: %s", warning)

    # ── Log errors and exit if any ──────────────────────────────────────────
    if errors:
        logger.error("=" * 70)
        logger.error("CONFIG VALIDATION FAILED (%s)", config_path)
        logger.error("=" * 70)
        for i, error in enumerate(errors, 1):
            logger.error("[%d] %s", i, error)
        logger.error("=" * 70)
        logger.error("Please fix the errors above and restart the bot.")
        logger.error("=" * 70)
        raise ConfigValidationError(f"Config validation failed with {len(errors)} error(s)")
