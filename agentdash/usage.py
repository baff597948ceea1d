"""Claude session log readers: per-session, per-agent and system token usage.

Session logs live in ``<claude_home>/projects/<encoded project path>/<id>.jsonl``;
the agent owning a session is recorded in ``<project>/.claude/agent-<id>.txt``.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .config import CLAUDE_HOME
from .models import SessionUsage, TokenBreakdown, TokenUsage, UsageRecord, parse_timestamp
from .pricing import calculate_cost

logger = logging.getLogger(__name__)

USAGE_RANGES = ("today", "week", "all")


def encode_project_path(project_path: str | Path) -> str:
    """``/home/user/code/project`` → ``-home-user-code-project``."""
    return str(project_path).replace("/", "-")


def session_log_dir(project_path: str | Path, claude_home: str | Path | None = None) -> Path:
    home = Path(claude_home or CLAUDE_HOME)
    return home / "projects" / encode_project_path(project_path)


def get_all_session_ids(project_path: str | Path,
                        claude_home: str | Path | None = None) -> list[str]:
    log_dir = session_log_dir(project_path, claude_home)
    try:
        return sorted(p.stem for p in log_dir.iterdir()
                      if p.suffix == ".jsonl" and p.is_file())
    except OSError:
        return []


def build_session_agent_map(project_path: str | Path) -> dict[str, str]:
    """Map session id → agent name from ``.claude/agent-<session>.txt`` files."""
    claude_dir = Path(project_path) / ".claude"
    mapping: dict[str, str] = {}
    try:
        files = sorted(claude_dir.iterdir())
    except OSError:
        return mapping
    for f in files:
        name = f.name
        if not (name.startswith("agent-") and name.endswith(".txt")):
            continue
        try:
            agent = f.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read %s: %s", f, e)
            continue
        if agent:
            mapping[name[len("agent-"):-len(".txt")]] = agent
    return mapping


def read_usage_records(session_id: str, project_path: str | Path,
                       claude_home: str | Path | None = None
                       ) -> tuple[list[UsageRecord], int] | None:
    """Return (usage records, skipped line count), or None if the log is unreadable."""
    path = session_log_dir(project_path, claude_home) / f"{session_id}.jsonl"
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None

    records = []
    skipped = 0
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            rec = json.loads(line)
        except json.JSONDecodeError:
            skipped += 1
            continue
        if not isinstance(rec, dict):
            skipped += 1
            continue
        usage = UsageRecord.from_line(rec, session_id)
        if usage is not None:
            records.append(usage)
    if skipped:
        logger.warning("Skipped %d malformed line(s) in %s", skipped, path)
    return records, skipped


def summarize_records(session_id: str, records: list[UsageRecord],
                      skipped: int = 0, agent_name: str | None = None) -> SessionUsage:
    tokens = TokenBreakdown()
    latest = None
    latest_raw = None
    for r in records:
        tokens.input += r.input_tokens
        tokens.cache_creation += r.cache_creation_input_tokens
        tokens.cache_read += r.cache_read_input_tokens
        tokens.output += r.output_tokens
        ts = r.parsed_timestamp
        if ts is not None and (latest is None or ts >= latest):
            latest, latest_raw = ts, r.timestamp
    tokens.total = tokens.input + tokens.cache_creation + tokens.cache_read + tokens.output
    return SessionUsage(
        session_id=session_id,
        agent_name=agent_name,
        tokens=tokens,
        cost=calculate_cost(tokens),
        timestamp=latest_raw,
        skipped_lines=skipped,
    )


def parse_session_usage(session_id: str, project_path: str | Path,
                        claude_home: str | Path | None = None,
                        agent_name: str | None = None) -> SessionUsage | None:
    result = read_usage_records(session_id, project_path, claude_home)
    if result is None:
        return None
    records, skipped = result
    return summarize_records(session_id, records, skipped, agent_name)


def range_start(time_range: str, now: datetime | None = None) -> datetime | None:
    if time_range not in USAGE_RANGES:
        raise ValueError(f"Invalid range {time_range!r}; expected one of {USAGE_RANGES}")
    now = now or datetime.now(timezone.utc)
    if time_range == "today":
        return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    if time_range == "week":
        return now - timedelta(days=7)
    return None


def _in_range(session: SessionUsage, start: datetime | None) -> bool:
    if start is None:
        return True
    ts = parse_timestamp(session.timestamp)
    return ts is not None and ts >= start


def _finish(usage: TokenUsage) -> TokenUsage:
    usage.cost = calculate_cost(usage)
    return usage


def get_agent_usage(agent_name: str, time_range: str, project_path: str | Path,
                    claude_home: str | Path | None = None,
                    now: datetime | None = None) -> TokenUsage:
    """Sum an agent's sessions whose latest record falls within ``time_range``."""
    if not agent_name:
        raise ValueError("agent_name is required")
    start = range_start(time_range, now)
    usage = TokenUsage()
    for session_id, agent in build_session_agent_map(project_path).items():
        if agent != agent_name:
            continue
        session = parse_session_usage(session_id, project_path, claude_home, agent)
        if session is None or not _in_range(session, start):
            continue
        usage.add_session(session)
    return _finish(usage)


def get_all_agent_usage(time_range: str, project_path: str | Path,
                        claude_home: str | Path | None = None,
                        now: datetime | None = None) -> dict[str, TokenUsage]:
    start = range_start(time_range, now)
    by_agent: dict[str, TokenUsage] = {}
    for session_id, agent in build_session_agent_map(project_path).items():
        session = parse_session_usage(session_id, project_path, claude_home, agent)
        if session is None or not _in_range(session, start):
            continue
        by_agent.setdefault(agent, TokenUsage()).add_session(session)
    return {agent: _finish(u) for agent, u in by_agent.items()}


def sum_usage(usages) -> TokenUsage:
    total = TokenUsage()
    for usage in usages:
        total.merge(usage)
    return _finish(total)


def get_system_total_usage(time_range: str, project_path: str | Path,
                           claude_home: str | Path | None = None,
                           now: datetime | None = None) -> TokenUsage:
    return sum_usage(get_all_agent_usage(time_range, project_path, claude_home, now).values())
