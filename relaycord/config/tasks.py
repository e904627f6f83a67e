from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import yaml


TASKS_DIR = Path(__file__).parent / "scheduled_tasks"


def load_scheduled_tasks(config: dict[str, Any], tasks_dir: Path | None = None) -> Dict[str, dict[str, Any]]:
    """
    Load scheduled task definitions from config['scheduled_tasks'] and from
    separate YAML files under relaycord/config/scheduled_tasks.
    File-based tasks override inline ones on name conflicts.
    """
    tasks: Dict[str, dict[str, Any]] = {}

    inline = config.get("scheduled_tasks", {})
    if isinstance(inline, dict):
        for name, tc in inline.items():
            if isinstance(tc, dict):
                tasks[name] = dict(tc)

    directory = tasks_dir or TASKS_DIR
    if directory.is_dir():
        for path in sorted(directory.glob("*.yaml")):
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            if not isinstance(data, dict):
                continue
            name = str(data.get("name") or path.stem)
            tasks[name] = data

    return tasks


def parse_cron(expr: str) -> dict[str, Any]:
    """Turn a five-field cron expression into APScheduler cron trigger kwargs."""
    parts = expr.split()
    if len(parts) != 5:
        raise ValueError(f"Invalid cron: {expr}")
    minute, hour, day, month, dow = parts
    kwargs: dict[str, Any] = {"second": 0}
    if minute != "*": kwargs["minute"] = minute
    if hour != "*": kwargs["hour"] = hour
    if day != "*": kwargs["day"] = day
    if month != "*": kwargs["month"] = month
    if dow != "*": kwargs["day_of_week"] = dow
    return kwargs
