"""
relaycord/logs/conversation.py

Append-only JSONL conversation log, one file per day.

Records are buffered in memory and written from a worker thread so disk I/O
never blocks the event loop. The log is best-effort: a failed write is logged
and the records are dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

FLUSH_THRESHOLD = 20
FLUSH_INTERVAL_SECONDS = 30


@dataclass
class ConversationTurn:
    timestamp: datetime
    user: str
    assistant: str
    channel_id: Optional[int] = None


class ConversationLog:
    def __init__(self, log_dir: str | Path, flush_threshold: int = FLUSH_THRESHOLD):
        self.log_dir = Path(log_dir)
        self.flush_threshold = flush_threshold
        self._buffer: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._closed = False
        self._pending: set[asyncio.Task] = set()

    def _path_for(self, day: datetime) -> Path:
        return self.log_dir / f"{day.strftime('%Y-%m-%d')}.jsonl"

    def _record(self, kind: str, **fields: Any) -> None:
        if self._closed:
            return
        self._buffer.append({"type": kind, "timestamp": datetime.now(timezone.utc).isoformat(), **fields})
        if len(self._buffer) >= self.flush_threshold:
            task = asyncio.get_running_loop().create_task(self.flush())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    # ── Record helpers ───────────────────────────────────────────────────────

    def log_user_message(self, text: str, channel_id: int, channel_name: str, author_id: int,
                         author_name: str, message_id: int, is_dm: bool, attachment_count: int = 0) -> None:
        self._record(
            "user_message", text=text, channel_id=channel_id, channel_name=channel_name,
            author_id=author_id, author_name=author_name, message_id=message_id,
            is_dm=is_dm, attachments=attachment_count,
        )

    def log_bot_response(self, text: str, channel_id: int, channel_name: str) -> None:
        self._record("bot_response", text=text, channel_id=channel_id, channel_name=channel_name)

    def log_turn(self, user: str, assistant: str, context: Optional[str], channel_id: int,
                 channel_name: str, usage: Optional[dict[str, int]] = None) -> None:
        self._record(
            "turn", user=user, assistant=assistant, context=context,
            channel_id=channel_id, channel_name=channel_name, usage=usage,
        )

    def log_heartbeat(self, text: str, channel_id: int, channel_name: str) -> None:
        self._record("heartbeat", text=text, channel_id=channel_id, channel_name=channel_name)

    def log_task(self, name: str, description: str, action_type: Optional[str]) -> None:
        self._record("task", name=name, description=description, action_type=action_type)

    def log_task_response(self, name: str, text: str) -> None:
        self._record("task_response", name=name, text=text)

    # ── I/O ──────────────────────────────────────────────────────────────────

    def _write(self, records: list[dict[str, Any]]) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        by_file: dict[Path, list[str]] = {}
        for rec in records:
            day = datetime.fromisoformat(rec["timestamp"])
            by_file.setdefault(self._path_for(day), []).append(json.dumps(rec, ensure_ascii=False))
        for path, lines in by_file.items():
            with path.open("a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")

    async def flush(self) -> int:
        async with self._lock:
            if not self._buffer:
                return 0
            records, self._buffer = self._buffer, []
            try:
                await asyncio.to_thread(self._write, records)
            except OSError as e:
                logging.warning("Failed to write %d conversation log record(s): %s", len(records), e)
                return 0
            return len(records)

    def _read_turns(self, day: datetime) -> list[ConversationTurn]:
        path = self._path_for(day)
        if not path.exists():
            return []
        turns: list[ConversationTurn] = []
        with path.open(encoding="utf-8") as f:
            for line in f:
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if rec.get("type") != "turn":
                    continue
                turns.append(ConversationTurn(
                    timestamp=datetime.fromisoformat(rec["timestamp"]),
                    user=rec.get("user") or "",
                    assistant=rec.get("assistant") or "",
                    channel_id=rec.get("channel_id"),
                ))
        return turns

    async def recent_turns(self, n: int = 3) -> list[ConversationTurn]:
        """The last `n` turns logged today (UTC), oldest first."""
        await self.flush()
        try:
            turns = await asyncio.to_thread(self._read_turns, datetime.now(timezone.utc))
        except OSError as e:
            logging.warning("Failed to read conversation log: %s", e)
            return []
        return turns[-n:] if n > 0 else []

    async def close(self) -> None:
        await self.flush()
        self._closed = True
