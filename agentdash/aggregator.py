"""Join agents, reservations, tasks and activity logs into the orchestration view.

Every section is computed from one snapshot of the sources. A source that
fails is reported in ``Aggregate.errors`` and its section falls back to
whatever partial data it returned (usually nothing); the rest still builds.
"""

import logging
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .activity import (
    STALENESS_TIERS, activities_from_tasks, classify_staleness, get_agent_activities,
    latest_activity,
)
from .config import ACTIVITY_LIMIT, ORCHESTRATION_CACHE_TTL, POLL_INTERVAL_MS, TASK_LIMIT
from .models import PRIORITIES, TASK_STATUSES, Agent, Reservation, Task
from .sources import MailStore, SourceUnavailable, TaskStore

logger = logging.getLogger(__name__)

DATA_SOURCES = ["agent-mail", "beads", "activity-logs"]


@dataclass
class Aggregate:
    data: dict
    errors: list[dict] = field(default_factory=list)


def _now_iso(now: datetime) -> str:
    return now.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def empty_task_stats() -> dict:
    stats = {"total": 0}
    stats.update({s: 0 for s in TASK_STATUSES})
    stats["by_priority"] = {f"p{p}": 0 for p in PRIORITIES}
    return stats


def compute_task_stats(tasks: list[Task]) -> dict:
    stats = empty_task_stats()
    stats["total"] = len(tasks)
    by_status = Counter(t.status for t in tasks)
    by_priority = Counter(t.priority for t in tasks)
    for s in TASK_STATUSES:
        stats[s] = by_status[s]
    for p in PRIORITIES:
        stats["by_priority"][f"p{p}"] = by_priority[p]
    return stats


def meta() -> dict:
    return {
        "poll_interval_ms": POLL_INTERVAL_MS,
        "data_sources": list(DATA_SOURCES),
        "cache_ttl_ms": ORCHESTRATION_CACHE_TTL * 1000,
    }


def empty_orchestration(now: datetime | None = None) -> dict:
    """Zero-valued response shape, shared by the success and error paths."""
    now = now or datetime.now(timezone.utc)
    return {
        "agents": [],
        "reservations": [],
        "reservations_by_agent": {},
        "tasks": [],
        "unassigned_tasks": [],
        "task_stats": empty_task_stats(),
        "tasks_with_deps_count": 0,
        "tasks_with_deps": [],
        "agent_health": {tier: 0 for tier in STALENESS_TIERS},
        "timestamp": _now_iso(now),
        "meta": meta(),
    }


def agent_record(agent: Agent, reservations: list[Reservation], tasks: list[Task],
                 activities: list[dict], now: datetime) -> dict:
    """Per-agent join. ``active`` and ``status`` are independent liveness signals."""
    open_tasks = sum(1 for t in tasks if t.status == "open")
    in_progress = sum(1 for t in tasks if t.status == "in_progress")
    has_active_reservation = any(r.is_active(now) for r in reservations)
    current = activities[0] if activities else None
    last = latest_activity(current.get("ts") if current else None, agent.last_active_ts)
    return {
        **agent.model_dump(),
        "reservation_count": len(reservations),
        "task_count": len(tasks),
        "open_tasks": open_tasks,
        "in_progress_tasks": in_progress,
        "active": has_active_reservation or in_progress > 0,
        "activities": activities,
        "current_activity": current,
        "status": classify_staleness(last, now),
        "last_activity_ts": _now_iso(last) if last else None,
    }


def aggregate(agents: list[Agent], reservations: list[Reservation], tasks: list[Task],
              activities: dict[str, list[dict]], now: datetime) -> dict:
    """Pure join over one snapshot of source data."""
    res_by_agent: dict[str, list[Reservation]] = defaultdict(list)
    for r in reservations:
        res_by_agent[r.agent_name].append(r)
    tasks_by_agent: dict[str, list[Task]] = defaultdict(list)
    for t in tasks:
        if t.assignee:
            tasks_by_agent[t.assignee].append(t)

    agent_stats = []
    for a in agents:
        own_tasks = tasks_by_agent.get(a.name, [])
        feed = activities.get(a.name)
        if not feed and a.name:
            # No activity log; fall back to the agent's task history
            feed = activities_from_tasks(a.name, own_tasks, ACTIVITY_LIMIT)
        agent_stats.append(agent_record(a, res_by_agent.get(a.name, []), own_tasks,
                                        feed or [], now))
    health = Counter(a["status"] for a in agent_stats)

    reservation_rows = [{**r.model_dump(), "active": r.is_active(now)} for r in reservations]
    reservations_by_agent: dict[str, list[dict]] = {}
    for row in reservation_rows:
        reservations_by_agent.setdefault(row["agent_name"], []).append(row)

    with_deps = [t.model_dump() for t in tasks if t.depends_on or t.blocked_by]
    unassigned = [t.model_dump() for t in tasks if not t.assignee and t.status == "open"]

    return {
        "agents": agent_stats,
        "reservations": reservation_rows,
        "reservations_by_agent": reservations_by_agent,
        "tasks": [t.model_dump() for t in tasks[:TASK_LIMIT]],
        "unassigned_tasks": unassigned,
        "task_stats": compute_task_stats(tasks),
        "tasks_with_deps_count": len(with_deps),
        "tasks_with_deps": with_deps,
        "agent_health": {tier: health[tier] for tier in STALENESS_TIERS},
        "timestamp": _now_iso(now),
        "meta": meta(),
    }


def _collect(name: str, future, errors: list[dict]):
    try:
        return future.result()
    except SourceUnavailable as e:
        logger.warning("Source %s unavailable: %s", e.source, e.message)
        errors.append({"source": e.source, "message": e.message})
        return e.partial
    except Exception as e:
        logger.exception("Reading %s failed", name)
        errors.append({"source": name, "message": str(e)})
        return None


def build_orchestration(mail_store: MailStore, task_store: TaskStore,
                        project_root: str | Path, project: str | None = None,
                        agent: str | None = None, now: datetime | None = None) -> Aggregate:
    """Read all sources concurrently, then join. Never raises for a failed source."""
    now = now or datetime.now(timezone.utc)
    errors: list[dict] = []
    with ThreadPoolExecutor(max_workers=4, thread_name_prefix="orchestration") as pool:
        f_agents = pool.submit(mail_store.list_agents, project)
        f_reservations = pool.submit(mail_store.list_reservations, agent, project)
        f_tasks = pool.submit(task_store.list_tasks, project)
        f_activities = pool.submit(get_agent_activities, project_root, ACTIVITY_LIMIT)

        agents = _collect("agents", f_agents, errors) or []
        reservations = _collect("reservations", f_reservations, errors) or []
        tasks = _collect("tasks", f_tasks, errors) or []
        activities = _collect("activities", f_activities, errors) or {}

    return Aggregate(aggregate(agents, reservations, tasks, activities, now), errors)
