import asyncio
import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from relaycord.logs.conversation import ConversationLog


class TestConversationLog(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name) / "conversations"

    def tearDown(self):
        self._tmp.cleanup()

    def today_file(self):
        return self.dir / f"{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.jsonl"

    async def test_records_are_buffered_until_flush(self):
        log = ConversationLog(self.dir, flush_threshold=100)
        log.log_bot_response("hi", 42, "general")
        self.assertFalse(self.today_file().exists())

        self.assertEqual(await log.flush(), 1)
        lines = self.today_file().read_text(encoding="utf-8").splitlines()
        record = json.loads(lines[0])
        self.assertEqual(record["type"], "bot_response")
        self.assertEqual(record["channel_id"], 42)

    async def test_threshold_triggers_background_flush(self):
        log = ConversationLog(self.dir, flush_threshold=2)
        log.log_task("daily", "say hi", "self_task")
        log.log_task_response("daily", "hi")
        await asyncio.sleep(0.05)
        for _ in range(20):
            if self.today_file().exists():
                break
            await asyncio.sleep(0.05)
        self.assertEqual(len(self.today_file().read_text(encoding="utf-8").splitlines()), 2)

    async def test_recent_turns(self):
        log = ConversationLog(self.dir, flush_threshold=100)
        for i in range(5):
            log.log_user_message(f"q{i}", 42, "general", 7, "alice", i, False)
            log.log_turn(f"q{i}", f"a{i}", None, 42, "general", usage={"total_tokens": 3})
        log.log_heartbeat("thinking", 42, "general")

        turns = await log.recent_turns(3)

        self.assertEqual([t.user for t in turns], ["q2", "q3", "q4"])
        self.assertEqual(turns[-1].assistant, "a4")
        self.assertEqual(turns[-1].channel_id, 42)
        self.assertEqual(await log.recent_turns(0), [])

    async def test_no_log_yet(self):
        self.assertEqual(await ConversationLog(self.dir).recent_turns(), [])

    async def test_write_failure_drops_records(self):
        blocker = Path(self._tmp.name) / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        log = ConversationLog(blocker / "sub", flush_threshold=100)
        log.log_bot_response("hi", 1, "x")
        with self.assertLogs(level="WARNING"):
            self.assertEqual(await log.flush(), 0)
        self.assertEqual(await log.flush(), 0)

    async def test_close_flushes_and_stops_recording(self):
        log = ConversationLog(self.dir, flush_threshold=100)
        log.log_bot_response("bye", 1, "x")
        await log.close()
        log.log_bot_response("ignored", 1, "x")
        self.assertEqual(await log.flush(), 0)
        self.assertEqual(len(self.today_file().read_text(encoding="utf-8").splitlines()), 1)


if __name__ == "__main__":
    unittest.main()
