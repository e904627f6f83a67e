"""
relaycord/relay/heartbeat.py

Randomized heartbeat timer.

Each cycle waits a jittered delay taken from the current time-of-day window,
then rolls once against that window's firing probability. Only a successful
roll runs the fire action (and therefore the backend call). Whatever happens,
the next cycle is scheduled after a short pause, so at most one cycle is ever
in flight.

The timer itself is a one-shot APScheduler `date` job that re-adds itself.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.asyncio import AsyncIOScheduler

JOB_ID = "heartbeat"
RESCHEDULE_PAUSE_SECONDS = 1.0
MIN_JITTER = 0.5


@dataclass(frozen=True)
class HeartbeatWindowConfig:
    interval_minutes: int
    firing_probability: float
    label: str


# (start_hour, end_hour, config); a window with start > end wraps past midnight.
HEARTBEAT_WINDOWS: tuple[tuple[int, int, HeartbeatWindowConfig], ...] = (
    (7, 9, HeartbeatWindowConfig(30, 0.50, "morning")),
    (9, 12, HeartbeatWindowConfig(45, 0.33, "late morning")),
    (12, 14, HeartbeatWindowConfig(15, 0.33, "midday")),
    (14, 18, HeartbeatWindowConfig(30, 0.40, "afternoon")),
    (18, 22, HeartbeatWindowConfig(20, 0.50, "evening")),
    (22, 1, HeartbeatWindowConfig(45, 0.25, "night")),
    (1, 7, HeartbeatWindowConfig(90, 0.20, "deep night")),
)


def window_for_hour(hour: int) -> HeartbeatWindowConfig:
    for start, end, config in HEARTBEAT_WINDOWS:
        if start < end:
            if start <= hour < end:
                return config
        elif hour >= start or hour < end:
            return config
    raise ValueError(f"hour out of range: {hour}")


def local_hour(tz_name: str, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    try:
        return now.astimezone(ZoneInfo(tz_name)).hour
    except (ZoneInfoNotFoundError, ValueError):
        logging.warning("Unknown timezone %r for heartbeat windows, using UTC", tz_name)
        return now.astimezone(timezone.utc).hour


def jittered_delay_seconds(config: HeartbeatWindowConfig, rng: random.Random) -> float:
    """Uniform delay between 50% and 100% of the window's base interval."""
    base = config.interval_minutes * 60.0
    return rng.uniform(base * MIN_JITTER, base)


class HeartbeatScheduler:
    def __init__(
        self,
        fire: Callable[[], Awaitable[None]],
        scheduler: AsyncIOScheduler,
        timezone_name: str = "UTC",
        rng: random.Random | None = None,
        reschedule_pause: float = RESCHEDULE_PAUSE_SECONDS,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._fire = fire
        self._scheduler = scheduler
        self._tz = timezone_name
        self._rng = rng or random.Random()
        self._pause = reschedule_pause
        self._now = now
        self._running = False
        self.cycles = 0
        self.fired = 0

    @property
    def running(self) -> bool:
        return self._running

    def current_window(self) -> HeartbeatWindowConfig:
        return window_for_hour(local_hour(self._tz, self._now()))

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._schedule_next(extra_delay=0.0)

    def stop(self) -> None:
        self._running = False
        if self._scheduler.get_job(JOB_ID):
            self._scheduler.remove_job(JOB_ID)

    def next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def _schedule_next(self, extra_delay: float) -> None:
        config = self.current_window()
        delay = jittered_delay_seconds(config, self._rng)
        run_date = self._now() + timedelta(seconds=extra_delay + delay)
        self._scheduler.add_job(
            self._on_timer,
            "date",
            run_date=run_date,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
        )
        logging.info(
            "🜂 Heartbeat scheduled in %.1f minutes [%s]",
            (extra_delay + delay) / 60, config.label,
        )

    async def _on_timer(self) -> None:
        try:
            await self.run_cycle()
        finally:
            if self._running:
                self._schedule_next(extra_delay=self._pause)

    async def run_cycle(self) -> bool:
        """
        One probability check and, on success, one fire. Returns True if fired.
        Errors from the fire action are logged and swallowed.
        """
        self.cycles += 1
        # The window may have changed while we were waiting.
        config = self.current_window()
        if self._rng.random() >= config.firing_probability:
            logging.info(
                "🜂 Heartbeat skipped (%.0f%% chance to fire) [%s] - no backend call",
                config.firing_probability * 100, config.label,
            )
            return False

        logging.info(
            "🜂 Heartbeat triggered (%.0f%% chance) [%s]",
            config.firing_probability * 100, config.label,
        )
        self.fired += 1
        try:
            await self._fire()
        except Exception:  # noqa: BLE001
            logging.exception("🜂 Heartbeat cycle failed")
        return True
