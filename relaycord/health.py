from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional

from relaycord.llm.client import BackendClient
from relaycord.relay.heartbeat import HeartbeatScheduler
from relaycord.relay.models import Platform


class StatusReporter:
    """Read-only snapshot of the bot and its backend, for the /status command."""

    def __init__(
        self,
        backend: BackendClient,
        platform: Platform,
        config: dict[str, Any],
        heartbeat: Optional[HeartbeatScheduler] = None,
        started_at: Optional[float] = None,
    ):
        self.backend = backend
        self.platform = platform
        self.config = config
        self.heartbeat = heartbeat
        self.started_at = started_at if started_at is not None else time.monotonic()

    async def status(self) -> dict[str, Any]:
        probe = await self.backend.health_check()
        backend: dict[str, Any] = {
            "base_url": self.backend.base_url,
            "session_id": self.backend.session_id,
            "reachable": probe["reachable"],
            "latency_ms": probe["latency_ms"],
        }
        if "error" in probe:
            backend["error"] = probe["error"]

        heartbeat: dict[str, Any] = {"enabled": bool(self.config.get("enable_heartbeat_timer"))}
        if self.heartbeat is not None:
            next_run = self.heartbeat.next_run_time()
            heartbeat.update(
                running=self.heartbeat.running,
                cycles=self.heartbeat.cycles,
                fired=self.heartbeat.fired,
                next_run=next_run.isoformat() if next_run else None,
            )

        connected = self.platform.is_connected()
        return {
            "status": "ok" if connected and probe["reachable"] else "degraded",
            "uptime_seconds": round(time.monotonic() - self.started_at),
            "discord": "connected" if connected else "disconnected",
            "backend": backend,
            "autonomous": bool(self.config.get("enable_autonomous")),
            "heartbeat": heartbeat,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


def format_status(status: dict[str, Any]) -> str:
    uptime = status["uptime_seconds"]
    hours, rem = divmod(uptime, 3600)
    minutes, seconds = divmod(rem, 60)
    backend = status["backend"]
    backend_line = (
        f"✅ reachable ({backend['latency_ms']} ms)"
        if backend["reachable"]
        else f"❌ unreachable ({backend.get('error', 'unknown error')})"
    )
    lines = [
        f"**Status:** {status['status']}",
        f"**Uptime:** {hours}h {minutes}m {seconds}s",
        f"**Discord:** {status['discord']}",
        f"**Backend:** `{backend['base_url']}` (session `{backend['session_id']}`) {backend_line}",
        f"**Autonomous mode:** {'on' if status['autonomous'] else 'off'}",
    ]
    hb = status["heartbeat"]
    if hb.get("running"):
        lines.append(f"**Heartbeat:** {hb['fired']}/{hb['cycles']} cycles fired, next at {hb['next_run'] or 'n/a'}")
    else:
        lines.append(f"**Heartbeat:** {'enabled' if hb['enabled'] else 'disabled'}")
    return "\n".join(lines)
