from __future__ import annotations

import logging
import os
import sys
from typing import Any, Callable

import yaml
from dotenv import load_dotenv

from .validator import validate_config, ConfigValidationError


DEFAULT_CONFIG_FILE = "config.yaml"
CONFIG_ENV_VAR = "CONFIG_PATH"

DEFAULTS: dict[str, Any] = {
    "backend_base_url": "http://localhost:8091",
    "backend_session_id": "discord-bot",
    "backend_model": "",
    "max_tokens": 8192,
    "temperature": 0.7,
    "backend_timeout_seconds": 300,
    "respond_to_dms": False,
    "respond_to_mentions": False,
    "respond_to_bots": False,
    "respond_to_generic": False,
    "enable_autonomous": False,
    "enable_heartbeat_timer": False,
    "surface_errors": False,
    "use_sender_prefix": False,
    "timezone": "America/New_York",
    "locale": "en-US",
    "allowed_dm_user_id": None,
    "channel_id": None,
    "heartbeat_log_channel_id": None,
    "openai_api_key": None,
    "max_consecutive_bot_replies": 3,
    "conversation_log_dir": "logs/conversations",
    "enable_image_compression": True,
}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_id(value: str) -> int | None:
    value = value.strip()
    return int(value) if value else None


# env var -> (config key, parser)
ENV_KEYS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "DISCORD_TOKEN": ("bot_token", str.strip),
    "BACKEND_BASE_URL": ("backend_base_url", str.strip),
    "BACKEND_SESSION_ID": ("backend_session_id", str.strip),
    "BACKEND_MODEL": ("backend_model", str.strip),
    "BACKEND_MAX_TOKENS": ("max_tokens", int),
    "BACKEND_TEMPERATURE": ("temperature", float),
    "BACKEND_TIMEOUT_SECONDS": ("backend_timeout_seconds", float),
    "RESPOND_TO_DMS": ("respond_to_dms", _parse_bool),
    "RESPOND_TO_MENTIONS": ("respond_to_mentions", _parse_bool),
    "RESPOND_TO_BOTS": ("respond_to_bots", _parse_bool),
    "RESPOND_TO_GENERIC": ("respond_to_generic", _parse_bool),
    "ENABLE_AUTONOMOUS": ("enable_autonomous", _parse_bool),
    "ENABLE_TIMER": ("enable_heartbeat_timer", _parse_bool),
    "SURFACE_ERRORS": ("surface_errors", _parse_bool),
    "USE_SENDER_PREFIX": ("use_sender_prefix", _parse_bool),
    "TIMEZONE": ("timezone", str.strip),
    "LOCALE": ("locale", str.strip),
    "ALLOWED_DM_USER_ID": ("allowed_dm_user_id", _parse_id),
    "DISCORD_CHANNEL_ID": ("channel_id", _parse_id),
    "HEARTBEAT_LOG_CHANNEL_ID": ("heartbeat_log_channel_id", _parse_id),
    "OPENAI_API_KEY": ("openai_api_key", str.strip),
    "MAX_CONSECUTIVE_BOT_REPLIES": ("max_consecutive_bot_replies", int),
    "CONVERSATION_LOG_DIR": ("conversation_log_dir", str.strip),
    "ENABLE_IMAGE_COMPRESSION": ("enable_image_compression", _parse_bool),
}


def get_config_path() -> str:
    """
    Resolve the config path, preferring an explicit environment override.
    """
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return env_path
    return DEFAULT_CONFIG_FILE


def _load_raw_config(path: str | None = None) -> dict[str, Any]:
    cfg_path = path or get_config_path()
    try:
        with open(cfg_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        # The YAML file is optional; everything can come from the environment.
        logging.debug("Config file not found, using environment only: %s", cfg_path)
        return {}
    except yaml.YAMLError as e:
        logging.error("YAML parsing error in %s: %s", cfg_path, e)
        sys.exit(1)

    if not isinstance(data, dict):
        logging.error("Config root must be a mapping, got %s", type(data).__name__)
        sys.exit(1)

    return data


def apply_env_overrides(cfg: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Overlay environment variables onto a config mapping.

    Unparseable values are logged and left for the validator to report.
    """
    environ = os.environ if environ is None else environ
    merged = dict(cfg)
    for env_name, (key, parse) in ENV_KEYS.items():
        raw = environ.get(env_name)
        if raw is None:
            continue
        try:
            merged[key] = parse(raw)
        except ValueError:
            logging.warning("Ignoring invalid value for %s: %r", env_name, raw)
            merged[key] = raw
    return merged


def build_config(raw: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    return apply_env_overrides(DEFAULTS | raw, environ)


def get_config(path: str | None = None) -> dict[str, Any]:
    """
    Public helper for loading configuration.

    - Loads `.env` into the process environment.
    - Reads the optional YAML file (CONFIG_PATH, default config.yaml).
    - Environment variables override YAML values.
    - Exits with error code 1 if validation fails.
    """
    load_dotenv()
    cfg_path = path or get_config_path()
    cfg = build_config(_load_raw_config(cfg_path))

    try:
        validate_config(cfg, cfg_path)
    except ConfigValidationError:
        sys.exit(1)

    return cfg
