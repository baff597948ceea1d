"""Token usage time series for sparklines.

Fixed-width buckets are aligned to the epoch (``floor(ts / width)``) and cover
``[start, start + width)``. A bounded range (``24h``/``7d``) is the N most
recent buckets ending in the one containing ``now``; ``all`` runs from the
bucket holding the earliest record. Empty buckets inside the window are
emitted as zeros so the series has no gaps.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .models import UsageRecord
from .pricing import calculate_cost
from .usage import build_session_agent_map, get_all_session_ids, read_usage_records

logger = logging.getLogger(__name__)

VALID_RANGES = ("24h", "7d", "all")
VALID_BUCKET_SIZES = ("30min", "hour", "session")

RANGE_SECONDS = {"24h": 24 * 3600, "7d": 7 * 24 * 3600}
BUCKET_SECONDS = {"30min": 1800, "hour": 3600}

# Session log stamps before this are counted as invalid
EARLIEST_TIMESTAMP = datetime(2023, 1, 1, tzinfo=timezone.utc)


def _iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, timezone.utc).isoformat().replace("+00:00", "Z")


def _new_bucket() -> dict:
    return {"input": 0, "cache_creation": 0, "cache_read": 0, "output": 0}


def _add(breakdown: dict, r: UsageRecord):
    breakdown["input"] += r.input_tokens
    breakdown["cache_creation"] += r.cache_creation_input_tokens
    breakdown["cache_read"] += r.cache_read_input_tokens
    breakdown["output"] += r.output_tokens


def _render(epoch: float, breakdown: dict, **extra) -> dict:
    return {
        "timestamp": _iso(epoch),
        "tokens": sum(breakdown.values()),
        "cost": calculate_cost(breakdown),
        "breakdown": breakdown,
        **extra,
    }


def validate_params(time_range: str, bucket_size: str):
    if time_range not in VALID_RANGES:
        raise ValueError(f"Invalid range {time_range!r}")
    if bucket_size not in VALID_BUCKET_SIZES:
        raise ValueError(f"Invalid bucketSize {bucket_size!r}")


def window_start(time_range: str, bucket_size: str, now_ep: float,
                 earliest_ep: float | None) -> float:
    """Inclusive lower bound of the requested window, as an epoch."""
    if time_range == "all":
        if earliest_ep is None:
            return now_ep
        if bucket_size == "session":
            return earliest_ep
        width = BUCKET_SECONDS[bucket_size]
        return (earliest_ep // width) * width
    span = RANGE_SECONDS[time_range]
    if bucket_size == "session":
        return now_ep - span
    width = BUCKET_SECONDS[bucket_size]
    n_buckets = span // width
    return ((now_ep // width) - n_buckets + 1) * width


def _time_buckets(in_range: list[tuple[float, UsageRecord]], width: int,
                  start_ep: float, now_ep: float) -> list[dict]:
    if not in_range:
        return []
    first = int(start_ep // width)
    last = int(now_ep // width)
    slots = [_new_bucket() for _ in range(last - first + 1)]
    for ep, r in in_range:
        _add(slots[int(ep // width) - first], r)
    return [_render((first + i) * width, b) for i, b in enumerate(slots)]


def _session_buckets(in_range: list[tuple[float, UsageRecord]]) -> list[dict]:
    sessions: dict[str, list] = {}
    for ep, r in in_range:
        entry = sessions.get(r.session_id)
        if entry is None:
            sessions[r.session_id] = [ep, _new_bucket()]
            entry = sessions[r.session_id]
        entry[0] = min(entry[0], ep)
        _add(entry[1], r)
    ordered = sorted(sessions.items(), key=lambda kv: kv[1][0])
    return [_render(ep, b, sessionId=sid) for sid, (ep, b) in ordered]


def bucketize(records: Iterable[UsageRecord], time_range: str, bucket_size: str,
              now: datetime | None = None) -> dict:
    """Group usage records into the bucket series for ``time_range``.

    Records without a parsable timestamp, or stamped before
    ``EARLIEST_TIMESTAMP``, are excluded and counted in ``invalidTimestamps``;
    records outside the window are dropped.
    """
    validate_params(time_range, bucket_size)
    now = now or datetime.now(timezone.utc)
    now_ep = now.timestamp()

    timed: list[tuple[float, UsageRecord]] = []
    invalid = 0
    for r in records:
        ts = r.parsed_timestamp
        if ts is None or ts < EARLIEST_TIMESTAMP:
            invalid += 1
            continue
        timed.append((ts.timestamp(), r))
    if invalid:
        logger.warning("Excluded %d record(s) with missing or implausible timestamps", invalid)

    earliest = min((ep for ep, _ in timed if ep <= now_ep), default=None)
    start_ep = window_start(time_range, bucket_size, now_ep, earliest)
    in_range = [(ep, r) for ep, r in timed if start_ep <= ep <= now_ep]

    if bucket_size == "session":
        data = _session_buckets(in_range)
    else:
        data = _time_buckets(in_range, BUCKET_SECONDS[bucket_size], start_ep, now_ep)

    totals = _new_bucket()
    for b in data:
        for k, v in b["breakdown"].items():
            totals[k] += v

    return {
        "data": data,
        "totalTokens": sum(totals.values()),
        "totalCost": calculate_cost(totals),
        "bucketCount": len(data),
        "bucketSize": bucket_size,
        "range": time_range,
        "startTime": _iso(start_ep),
        "endTime": _iso(now_ep),
        "sessionCount": len({r.session_id for _, r in in_range}),
        "invalidTimestamps": invalid,
        "skippedLines": 0,
    }


def get_token_time_series(time_range: str, bucket_size: str, project_path: str | Path,
                          agent_name: str | None = None, session_id: str | None = None,
                          claude_home: str | Path | None = None,
                          now: datetime | None = None) -> dict:
    """Read the project's session logs (optionally one agent/session) and bucketize."""
    validate_params(time_range, bucket_size)
    session_ids = get_all_session_ids(project_path, claude_home)
    if session_id:
        session_ids = [s for s in session_ids if s == session_id]
    if agent_name:
        agent_map = build_session_agent_map(project_path)
        session_ids = [s for s in session_ids if agent_map.get(s) == agent_name]

    records: list[UsageRecord] = []
    skipped = 0
    for sid in session_ids:
        result = read_usage_records(sid, project_path, claude_home)
        if result is None:
            logger.warning("Session log %s disappeared while reading", sid)
            continue
        recs, bad = result
        records.extend(recs)
        skipped += bad

    series = bucketize(records, time_range, bucket_size, now)
    series["skippedLines"] = skipped
    return series
