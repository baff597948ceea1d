from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

TaskStatus = Literal["open", "in_progress", "blocked", "closed"]
TASK_STATUSES: tuple[str, ...] = ("open", "in_progress", "blocked", "closed")
PRIORITIES = (0, 1, 2, 3, 4)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO timestamp (``Z`` suffix allowed) to an aware datetime.

    Naive values are taken as UTC. Returns None for anything unparsable.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value:
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _as_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float) and value >= 0:
        return int(value)
    return 0


class Agent(BaseModel):
    name: str
    program: str | None = None
    model: str | None = None
    task_description: str | None = None
    inception_ts: str | None = None
    last_active_ts: str | None = None
    project_path: str | None = None
    project_slug: str | None = None


class Reservation(BaseModel):
    id: int
    agent_name: str
    path_pattern: str
    exclusive: bool = True
    reason: str | None = None
    created_ts: str | None = None
    expires_ts: str | None = None
    released_ts: str | None = None
    project_path: str | None = None

    def is_active(self, now: datetime) -> bool:
        if self.released_ts:
            return False
        expires = parse_timestamp(self.expires_ts)
        return expires is not None and expires > now


class Task(BaseModel):
    id: str
    title: str = ""
    description: str | None = None
    status: TaskStatus
    priority: int = Field(2, ge=0, le=4)
    assignee: str | None = None
    issue_type: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None
    closed_at: str | None = None
    project: str | None = None


class Message(BaseModel):
    id: int
    thread_id: str | None = None
    subject: str = ""
    body_md: str | None = None
    sender: str | None = None
    importance: str | None = None
    ack_required: bool = False
    created_ts: str | None = None


class UsageRecord(BaseModel):
    """One usage-bearing line of a session log, coerced at the read boundary."""

    session_id: str
    timestamp: str | None = None
    input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def from_line(cls, rec: dict, session_id: str) -> "UsageRecord | None":
        msg = rec.get("message")
        if not isinstance(msg, dict):
            return None
        usage = msg.get("usage")
        if not isinstance(usage, dict):
            return None
        ts = rec.get("timestamp")
        return cls(
            session_id=session_id,
            timestamp=ts if isinstance(ts, str) else None,
            input_tokens=_as_count(usage.get("input_tokens")),
            cache_creation_input_tokens=_as_count(usage.get("cache_creation_input_tokens")),
            cache_read_input_tokens=_as_count(usage.get("cache_read_input_tokens")),
            output_tokens=_as_count(usage.get("output_tokens")),
        )

    @property
    def total_tokens(self) -> int:
        return (self.input_tokens + self.cache_creation_input_tokens
                + self.cache_read_input_tokens + self.output_tokens)

    @property
    def parsed_timestamp(self) -> datetime | None:
        return parse_timestamp(self.timestamp)


class TokenBreakdown(BaseModel):
    input: int = 0
    cache_creation: int = 0
    cache_read: int = 0
    output: int = 0
    total: int = 0


class SessionUsage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    agent_name: str | None = Field(None, alias="agentName")
    tokens: TokenBreakdown = Field(default_factory=TokenBreakdown)
    cost: float = 0.0
    timestamp: str | None = None
    skipped_lines: int = Field(0, alias="skippedLines")


class TokenUsage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    session_count: int = Field(0, alias="sessionCount")

    def add_session(self, session: SessionUsage) -> None:
        self.input_tokens += session.tokens.input
        self.cache_creation_input_tokens += session.tokens.cache_creation
        self.cache_read_input_tokens += session.tokens.cache_read
        self.output_tokens += session.tokens.output
        self.total_tokens += session.tokens.total
        self.session_count += 1

    def merge(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens
        self.session_count += other.session_count


class AssignRequest(BaseModel):
    taskId: str | None = None
    agentName: str | None = None
