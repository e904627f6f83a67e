#!/usr/bin/env python3
"""
Tests for config loading, environment overrides, validation and scheduled tasks.

Usage:
    python test_config_validator.py
"""

import tempfile
import unittest
from pathlib import Path

from relaycord.config.loader import DEFAULTS, apply_env_overrides, build_config
from relaycord.config.tasks import load_scheduled_tasks, parse_cron
from relaycord.config.validator import ConfigValidationError, validate_config


def valid_config(**overrides):
    cfg = dict(DEFAULTS, bot_token="token")
    cfg.update(overrides)
    return cfg


class TestEnvOverrides(unittest.TestCase):
    def test_env_wins_over_yaml(self):
        cfg = build_config(
            {"respond_to_dms": False, "timezone": "Europe/Berlin"},
            {"RESPOND_TO_DMS": "true", "TIMEZONE": "Asia/Tokyo", "ALLOWED_DM_USER_ID": "1234"},
        )
        self.assertTrue(cfg["respond_to_dms"])
        self.assertEqual(cfg["timezone"], "Asia/Tokyo")
        self.assertEqual(cfg["allowed_dm_user_id"], 1234)

    def test_defaults_fill_missing_keys(self):
        cfg = build_config({}, {})
        self.assertEqual(cfg["max_consecutive_bot_replies"], 3)
        self.assertEqual(cfg["locale"], "en-US")
        self.assertFalse(cfg["enable_autonomous"])

    def test_bool_parsing(self):
        for raw, expected in (("1", True), ("yes", True), ("ON", True), ("false", False), ("", False)):
            cfg = apply_env_overrides({}, {"ENABLE_AUTONOMOUS": raw})
            self.assertIs(cfg["enable_autonomous"], expected, raw)

    def test_empty_id_means_unset(self):
        cfg = apply_env_overrides({"channel_id": 5}, {"DISCORD_CHANNEL_ID": ""})
        self.assertIsNone(cfg["channel_id"])

    def test_invalid_value_is_left_for_validator(self):
        with self.assertLogs(level="WARNING"):
            cfg = apply_env_overrides({}, {"BACKEND_MAX_TOKENS": "lots"})
        self.assertEqual(cfg["max_tokens"], "lots")
        with self.assertRaises(ConfigValidationError), self.assertLogs(level="ERROR"):
            validate_config(valid_config(max_tokens=cfg["max_tokens"]))


class TestValidateConfig(unittest.TestCase):
    def test_valid_config_passes(self):
        validate_config(valid_config())

    def test_missing_token(self):
        with self.assertRaises(ConfigValidationError), self.assertLogs(level="ERROR") as logs:
            validate_config(valid_config(bot_token=""))
        self.assertTrue(any("DISCORD_TOKEN" in line for line in logs.output))

    def test_bad_types(self):
        cases = (
            {"backend_base_url": "localhost:8091"},
            {"respond_to_dms": "yes"},
            {"channel_id": "general"},
            {"temperature": "warm"},
            {"backend_timeout_seconds": 0},
            {"max_consecutive_bot_replies": -1},
        )
        for overrides in cases:
            with self.subTest(overrides=overrides):
                with self.assertRaises(ConfigValidationError), self.assertLogs(level="ERROR"):
                    validate_config(valid_config(**overrides))

    def test_unknown_timezone_is_only_a_warning(self):
        with self.assertLogs(level="WARNING") as logs:
            validate_config(valid_config(timezone="Mars/Base"))
        self.assertTrue(any("Mars/Base" in line for line in logs.output))

    def test_bots_without_autonomous_warns(self):
        with self.assertLogs(level="WARNING") as logs:
            validate_config(valid_config(respond_to_bots=True))
        self.assertTrue(any("bot-to-bot" in line for line in logs.output))

    def test_scheduled_tasks(self):
        good = {"daily": {"enabled": True, "cron": "0 9 * * *", "action_type": "user_reminder"}}
        validate_config(valid_config(scheduled_tasks=good))

        bad_cases = (
            {"daily": {"enabled": True, "action_type": "user_reminder"}},
            {"daily": {"enabled": True, "cron": "0 9 * * *", "action_type": "shout"}},
            {"daily": None},
            ["daily"],
        )
        for tasks in bad_cases:
            with self.subTest(tasks=tasks):
                with self.assertRaises(ConfigValidationError), self.assertLogs(level="ERROR"):
                    validate_config(valid_config(scheduled_tasks=tasks))

    def test_disabled_task_is_not_checked(self):
        validate_config(valid_config(scheduled_tasks={"later": {"enabled": False}}))


class TestScheduledTasks(unittest.TestCase):
    def test_files_override_inline_tasks(self):
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "standup.yaml").write_text(
                "enabled: true\ncron: '30 10 * * 1-5'\ndescription: from file\naction_type: channel_post\n",
                encoding="utf-8",
            )
            Path(tmp, "ignored.yaml").write_text("- not a mapping\n", encoding="utf-8")
            config = {"scheduled_tasks": {"standup": {"enabled": True, "description": "inline"},
                                          "other": {"enabled": False}}}
            tasks = load_scheduled_tasks(config, Path(tmp))

        self.assertEqual(set(tasks), {"standup", "other"})
        self.assertEqual(tasks["standup"]["description"], "from file")

    def test_missing_directory(self):
        tasks = load_scheduled_tasks({}, Path("/nonexistent/relaycord-tasks"))
        self.assertEqual(tasks, {})

    def test_bundled_example_task_is_disabled(self):
        tasks = load_scheduled_tasks({})
        self.assertIn("morning_checkin", tasks)
        self.assertFalse(tasks["morning_checkin"]["enabled"])

    def test_parse_cron(self):
        self.assertEqual(
            parse_cron("30 9 * * 1-5"),
            {"second": 0, "minute": "30", "hour": "9", "day_of_week": "1-5"},
        )
        with self.assertRaises(ValueError):
            parse_cron("every morning")


if __name__ == "__main__":
    unittest.main()
