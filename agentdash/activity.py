"""Agent activity feeds and activity-based staleness tiers."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .config import ACTIVITY_LIMIT, IDLE_THRESHOLD_S, WORKING_THRESHOLD_S
from .models import Task, parse_timestamp

logger = logging.getLogger(__name__)

WORKING = "working"
IDLE = "idle"
SLEEPING = "sleeping"
STALENESS_TIERS = (WORKING, IDLE, SLEEPING)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _newest_first(activities: list[dict]) -> list[dict]:
    # Stable: equal timestamps keep file order
    return sorted(activities, key=lambda a: parse_timestamp(a.get("ts")) or _EPOCH,
                  reverse=True)


def get_agent_activities(project_path: str | Path,
                         limit: int = ACTIVITY_LIMIT) -> dict[str, list[dict]]:
    """Read ``.claude/*-activity.jsonl`` and group entries by ``agent``."""
    claude_dir = Path(project_path) / ".claude"
    by_agent: dict[str, list[dict]] = {}
    try:
        files = sorted(f for f in claude_dir.iterdir() if f.name.endswith("-activity.jsonl"))
    except OSError:
        return by_agent

    for f in files:
        try:
            lines = f.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as e:
            logger.warning("Failed to read activity file %s: %s", f, e)
            continue
        for line in lines:
            if not line.strip():
                continue
            try:
                activity = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed activity line in %s", f.name)
                continue
            if not isinstance(activity, dict) or not activity.get("agent"):
                continue
            by_agent.setdefault(activity["agent"], []).append(activity)

    return {agent: _newest_first(acts)[:limit] for agent, acts in by_agent.items()}


def activities_from_tasks(agent_name: str, tasks: Iterable[Task],
                          limit: int = ACTIVITY_LIMIT) -> list[dict]:
    """Render the agent's assigned tasks as activity entries, newest first."""
    if not agent_name:
        raise ValueError("Agent name is required")
    activities = [
        {
            "ts": t.closed_at or t.updated_at or t.created_at,
            "preview": f"[{t.id}] {t.title}",
            "content": t.description or t.title,
            "type": "task",
            "taskId": t.id,
            "status": t.status,
        }
        for t in tasks if t.assignee == agent_name
    ]
    return _newest_first(activities)[:limit]


def latest_activity(*timestamps) -> datetime | None:
    parsed = [ts for ts in map(parse_timestamp, timestamps) if ts is not None]
    return max(parsed, default=None)


def classify_staleness(last_activity: datetime | None, now: datetime) -> str:
    """working < 10 min <= idle <= 60 min < sleeping; unknown is sleeping."""
    if last_activity is None:
        return SLEEPING
    age = (now - last_activity).total_seconds()
    if age < WORKING_THRESHOLD_S:
        return WORKING
    if age <= IDLE_THRESHOLD_S:
        return IDLE
    return SLEEPING
