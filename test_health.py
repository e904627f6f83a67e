import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from relaycord.health import StatusReporter, format_status


def backend(reachable=True):
    probe = {"reachable": reachable, "latency_ms": 12}
    if not reachable:
        probe["error"] = "Backend connection failed"
    mock = MagicMock()
    mock.base_url = "http://localhost:8091"
    mock.session_id = "discord-bot"
    mock.health_check = AsyncMock(return_value=probe)
    return mock


def platform(connected=True):
    mock = MagicMock()
    mock.is_connected.return_value = connected
    return mock


class TestStatusReporter(unittest.IsolatedAsyncioTestCase):
    async def test_healthy(self):
        reporter = StatusReporter(backend(), platform(), {"enable_autonomous": True})
        status = await reporter.status()
        self.assertEqual(status["status"], "ok")
        self.assertEqual(status["discord"], "connected")
        self.assertEqual(status["backend"]["latency_ms"], 12)
        self.assertNotIn("error", status["backend"])
        self.assertTrue(status["autonomous"])
        self.assertEqual(status["heartbeat"], {"enabled": False})

    async def test_degraded_when_backend_unreachable(self):
        status = await StatusReporter(backend(reachable=False), platform(), {}).status()
        self.assertEqual(status["status"], "degraded")
        self.assertEqual(status["backend"]["error"], "Backend connection failed")

    async def test_degraded_when_discord_disconnected(self):
        status = await StatusReporter(backend(), platform(connected=False), {}).status()
        self.assertEqual(status["status"], "degraded")
        self.assertEqual(status["discord"], "disconnected")

    async def test_heartbeat_counters(self):
        heartbeat = MagicMock(running=True, cycles=7, fired=2)
        heartbeat.next_run_time.return_value = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
        reporter = StatusReporter(backend(), platform(), {"enable_heartbeat_timer": True}, heartbeat=heartbeat)

        status = await reporter.status()

        self.assertEqual(status["heartbeat"]["fired"], 2)
        self.assertEqual(status["heartbeat"]["next_run"], "2025-06-02T09:00:00+00:00")
        text = format_status(status)
        self.assertIn("2/7 cycles fired", text)
        self.assertIn("✅ reachable (12 ms)", text)


class TestFormatStatus(unittest.TestCase):
    def test_uptime_and_unreachable_backend(self):
        text = format_status({
            "status": "degraded",
            "uptime_seconds": 3725,
            "discord": "connected",
            "backend": {"base_url": "http://b", "session_id": "s", "reachable": False,
                        "latency_ms": 3, "error": "refused"},
            "autonomous": False,
            "heartbeat": {"enabled": False},
        })
        self.assertIn("**Uptime:** 1h 2m 5s", text)
        self.assertIn("❌ unreachable (refused)", text)
        self.assertIn("**Heartbeat:** disabled", text)


if __name__ == "__main__":
    unittest.main()
