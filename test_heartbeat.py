import random
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from relaycord.relay.heartbeat import (
    HEARTBEAT_WINDOWS,
    JOB_ID,
    HeartbeatScheduler,
    jittered_delay_seconds,
    local_hour,
    window_for_hour,
)


def at_hour(hour):
    fixed = datetime(2025, 6, 2, hour, 30, tzinfo=timezone.utc)
    return lambda: fixed


class TestWindows(unittest.TestCase):
    def test_every_hour_has_a_window(self):
        for hour in range(24):
            self.assertIsNotNone(window_for_hour(hour))

    def test_table_values(self):
        self.assertEqual(window_for_hour(8).interval_minutes, 30)
        self.assertEqual(window_for_hour(8).firing_probability, 0.50)
        self.assertEqual(window_for_hour(10).firing_probability, 0.33)
        self.assertEqual(window_for_hour(13).interval_minutes, 15)
        self.assertEqual(window_for_hour(17).label, "afternoon")
        self.assertEqual(window_for_hour(19).interval_minutes, 20)
        self.assertEqual(window_for_hour(23).label, "night")
        self.assertEqual(window_for_hour(0).label, "night")
        self.assertEqual(window_for_hour(3).interval_minutes, 90)

    def test_windows_do_not_overlap(self):
        def covers(start, end, hour):
            if start < end:
                return start <= hour < end
            return hour >= start or hour < end

        for hour in range(24):
            matches = [cfg.label for start, end, cfg in HEARTBEAT_WINDOWS if covers(start, end, hour)]
            self.assertEqual(len(matches), 1, f"hour {hour}: {matches}")

    def test_jitter_stays_between_half_and_full_interval(self):
        rng = random.Random(1)
        cfg = window_for_hour(3)
        for _ in range(1000):
            delay = jittered_delay_seconds(cfg, rng)
            self.assertGreaterEqual(delay, 45 * 60)
            self.assertLessEqual(delay, 90 * 60)

    def test_local_hour_uses_timezone(self):
        now = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
        self.assertEqual(local_hour("America/New_York", now), 7)

    def test_unknown_timezone_falls_back_to_utc(self):
        now = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
        with self.assertLogs(level="WARNING"):
            self.assertEqual(local_hour("Mars/Olympus_Mons", now), 12)


class TestRunCycle(unittest.IsolatedAsyncioTestCase):
    async def test_fire_rate_converges_to_window_probability(self):
        fire = AsyncMock()
        hb = HeartbeatScheduler(fire, MagicMock(), "UTC", rng=random.Random(1234), now=at_hour(10))
        cycles = 10_000
        for _ in range(cycles):
            await hb.run_cycle()
        rate = fire.await_count / cycles
        self.assertAlmostEqual(rate, 0.33, delta=0.02)
        self.assertEqual(hb.fired, fire.await_count)
        self.assertEqual(hb.cycles, cycles)

    async def test_failed_trial_never_fires(self):
        fire = AsyncMock()
        rng = MagicMock()
        rng.random.return_value = 0.99
        hb = HeartbeatScheduler(fire, MagicMock(), "UTC", rng=rng, now=at_hour(10))
        self.assertFalse(await hb.run_cycle())
        fire.assert_not_awaited()

    async def test_fire_errors_are_swallowed(self):
        fire = AsyncMock(side_effect=RuntimeError("backend down"))
        rng = MagicMock()
        rng.random.return_value = 0.0
        hb = HeartbeatScheduler(fire, MagicMock(), "UTC", rng=rng, now=at_hour(10))
        with self.assertLogs(level="ERROR"):
            self.assertTrue(await hb.run_cycle())


class TestScheduling(unittest.IsolatedAsyncioTestCase):
    def _scheduler(self):
        scheduler = MagicMock()
        scheduler.get_job.return_value = None
        return scheduler

    async def test_start_schedules_one_date_job_within_jitter(self):
        scheduler = self._scheduler()
        now = at_hour(8)
        hb = HeartbeatScheduler(AsyncMock(), scheduler, "UTC", rng=random.Random(5), now=now)
        hb.start()
        hb.start()  # idempotent
        self.assertEqual(scheduler.add_job.call_count, 1)
        args, kwargs = scheduler.add_job.call_args
        self.assertEqual(args[1], "date")
        self.assertEqual(kwargs["id"], JOB_ID)
        self.assertTrue(kwargs["replace_existing"])
        delay = kwargs["run_date"] - now()
        self.assertGreaterEqual(delay, timedelta(minutes=15))
        self.assertLessEqual(delay, timedelta(minutes=30))

    async def test_timer_reschedules_after_pause_even_on_error(self):
        scheduler = self._scheduler()
        rng = MagicMock()
        rng.random.return_value = 0.0
        rng.uniform.return_value = 600.0
        now = at_hour(8)
        fire = AsyncMock(side_effect=RuntimeError("boom"))
        hb = HeartbeatScheduler(fire, scheduler, "UTC", rng=rng, reschedule_pause=1.0, now=now)
        hb.start()
        with self.assertLogs(level="ERROR"):
            await hb._on_timer()
        self.assertEqual(scheduler.add_job.call_count, 2)
        delay = scheduler.add_job.call_args.kwargs["run_date"] - now()
        self.assertEqual(delay, timedelta(seconds=601))

    async def test_stop_removes_job_and_prevents_reschedule(self):
        scheduler = self._scheduler()
        hb = HeartbeatScheduler(AsyncMock(), scheduler, "UTC", rng=random.Random(2), now=at_hour(8))
        hb.start()
        scheduler.get_job.return_value = MagicMock()
        hb.stop()
        scheduler.remove_job.assert_called_once_with(JOB_ID)
        await hb._on_timer()
        self.assertEqual(scheduler.add_job.call_count, 1)


if __name__ == "__main__":
    unittest.main()
