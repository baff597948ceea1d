"""Agent Mail and Beads readers behind the MailStore / TaskStore interfaces.

Both stores are owned by external tools; everything here is read-only except
``BeadsTaskStore.assign_task``, which shells out to the ``bd`` CLI.
Absent databases read as empty. A database that exists but cannot be
queried raises ``SourceUnavailable``.
"""

import logging
import sqlite3
import subprocess
from pathlib import Path
from typing import Callable, NamedTuple, Protocol

from pydantic import ValidationError

from .config import BD_TIMEOUT_S
from .db import connect_readonly, table_columns
from .models import Agent, Message, Reservation, Task
from .projects import filter_tasks_by_project, project_from_task_id

logger = logging.getLogger(__name__)


class SourceUnavailable(Exception):
    """A source store exists but could not be read.

    ``partial`` carries whatever was read before the failure.
    """

    def __init__(self, source: str, message: str, partial: list | None = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message
        self.partial = partial or []


class TaskCommandError(Exception):
    def __init__(self, message: str, exit_code: int | None = None,
                 stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class CommandResult(NamedTuple):
    exit_code: int
    stdout: str
    stderr: str


class MailStore(Protocol):
    def list_agents(self, project: str | None = None) -> list[Agent]: ...

    def list_reservations(self, agent: str | None = None,
                          project: str | None = None) -> list[Reservation]: ...

    def thread_messages(self, thread_id: str) -> list[Message]: ...


class TaskStore(Protocol):
    def list_tasks(self, project: str | None = None) -> list[Task]: ...

    def assign_task(self, task_id: str, agent_name: str) -> CommandResult: ...


def _validate_rows(rows, model, source: str) -> list:
    out = []
    for r in rows:
        try:
            out.append(model.model_validate(dict(r)))
        except ValidationError as e:
            logger.warning("Skipping invalid %s row: %s", source, e.errors()[0].get("msg"))
    return out


class AgentMailStore:
    """Reads agents, file reservations and messages from the Agent Mail DB."""

    source = "agent-mail"

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row] | None:
        if not self.db_path.is_file():
            logger.debug("Agent Mail DB %s not found", self.db_path)
            return None
        try:
            with connect_readonly(self.db_path) as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise SourceUnavailable(self.source, str(e)) from e

    def list_agents(self, project: str | None = None) -> list[Agent]:
        sql = (
            "SELECT a.name, a.program, a.model, a.task_description, "
            "a.inception_ts, a.last_active_ts, "
            "p.human_key AS project_path, p.slug AS project_slug "
            "FROM agents a LEFT JOIN projects p ON p.id = a.project_id"
        )
        params: tuple = ()
        if project:
            sql += " WHERE p.human_key = ? OR p.slug = ?"
            params = (project, project)
        sql += " ORDER BY a.name, a.id"
        rows = self._query(sql, params)
        return _validate_rows(rows or [], Agent, "agent")

    def list_reservations(self, agent: str | None = None,
                          project: str | None = None) -> list[Reservation]:
        sql = (
            "SELECT r.id, a.name AS agent_name, r.path_pattern, r.exclusive, "
            "r.reason, r.created_ts, r.expires_ts, r.released_ts, "
            "p.human_key AS project_path "
            "FROM file_reservations r "
            "JOIN agents a ON a.id = r.agent_id "
            "LEFT JOIN projects p ON p.id = r.project_id "
            "WHERE r.released_ts IS NULL"
        )
        params: list = []
        if agent:
            sql += " AND a.name = ?"
            params.append(agent)
        if project:
            sql += " AND (p.human_key = ? OR p.slug = ?)"
            params.extend([project, project])
        sql += " ORDER BY r.created_ts DESC, r.id"
        rows = self._query(sql, tuple(params))
        return _validate_rows(rows or [], Reservation, "reservation")

    def thread_messages(self, thread_id: str) -> list[Message]:
        if not thread_id:
            raise ValueError("thread_id is required")
        rows = self._query(
            "SELECT m.id, m.thread_id, m.subject, m.body_md, m.importance, "
            "m.ack_required, m.created_ts, a.name AS sender "
            "FROM messages m LEFT JOIN agents a ON a.id = m.sender_id "
            "WHERE m.thread_id = ? OR CAST(m.id AS TEXT) = ? "
            "ORDER BY m.created_ts, m.id",
            (thread_id, thread_id),
        )
        return _validate_rows(rows or [], Message, "message")


_ISSUE_COLS = ("id", "title", "description", "status", "priority", "issue_type",
               "assignee", "created_at", "updated_at", "closed_at")


class BeadsTaskStore:
    """Reads tasks from every ``<code_root>/<project>/.beads/*.db``."""

    source = "beads"

    def __init__(self, code_root: str | Path, bd_bin: str = "bd",
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.code_root = Path(code_root)
        self.bd_bin = bd_bin
        self.runner = runner

    def discover(self) -> list[tuple[str, Path]]:
        """Return (project_name, db_path) pairs, sorted by project name."""
        stores = []
        try:
            project_dirs = sorted(p for p in self.code_root.iterdir() if p.is_dir())
        except FileNotFoundError:
            return stores
        except OSError as e:
            logger.warning("Cannot list %s: %s", self.code_root, e)
            return stores
        for d in project_dirs:
            try:
                dbs = sorted((d / ".beads").glob("*.db"))
            except OSError:
                continue
            if dbs:
                stores.append((d.name, dbs[0]))
        return stores

    def _read_store(self, project: str, db_path: Path) -> list[Task]:
        with connect_readonly(db_path) as conn:
            have = table_columns(conn, "issues")
            cols = ", ".join(c if c in have else f"NULL AS {c}" for c in _ISSUE_COLS)
            issues = conn.execute(
                f"SELECT {cols} FROM issues "
                "ORDER BY priority, created_at DESC, id"
            ).fetchall()

            depends_on: dict[str, list[str]] = {}
            blocked_by: dict[str, list[str]] = {}
            if table_columns(conn, "dependencies"):
                for d in conn.execute(
                    "SELECT d.issue_id, d.depends_on_id, d.type, i.status AS target_status "
                    "FROM dependencies d LEFT JOIN issues i ON i.id = d.depends_on_id "
                    "ORDER BY d.issue_id, d.depends_on_id"
                ):
                    depends_on.setdefault(d["issue_id"], []).append(d["depends_on_id"])
                    if d["type"] == "blocks" and d["target_status"] != "closed":
                        blocked_by.setdefault(d["issue_id"], []).append(d["depends_on_id"])

        rows = []
        for r in issues:
            row = dict(r)
            row["title"] = row["title"] or ""
            if row["priority"] is None:
                row["priority"] = 2
            row["project"] = project
            row["depends_on"] = depends_on.get(row["id"], [])
            row["blocked_by"] = blocked_by.get(row["id"], [])
            rows.append(row)
        return _validate_rows(rows, Task, "task")

    def list_tasks(self, project: str | None = None) -> list[Task]:
        tasks: list[Task] = []
        failures = []
        for name, db_path in self.discover():
            try:
                tasks.extend(self._read_store(name, db_path))
            except sqlite3.Error as e:
                logger.warning("Failed to read Beads DB %s: %s", db_path, e)
                failures.append(f"{name}: {e}")
        tasks = filter_tasks_by_project(tasks, project)
        if failures:
            raise SourceUnavailable(self.source, "; ".join(failures), partial=tasks)
        return tasks

    def project_dir(self, task_id: str) -> Path | None:
        name = project_from_task_id(task_id)
        if name and (self.code_root / name).is_dir():
            return self.code_root / name
        return None

    def assign_task(self, task_id: str, agent_name: str) -> CommandResult:
        if not task_id or not agent_name:
            raise ValueError("task_id and agent_name are required")
        cmd = [self.bd_bin, "update", task_id, "--assignee", agent_name]
        try:
            proc = self.runner(cmd, cwd=self.project_dir(task_id), capture_output=True,
                               text=True, timeout=BD_TIMEOUT_S)
        except FileNotFoundError as e:
            raise TaskCommandError(f"{self.bd_bin} not found", exit_code=127,
                                   stderr=str(e)) from e
        except OSError as e:
            raise TaskCommandError(f"Cannot run {self.bd_bin}: {e}", stderr=str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise TaskCommandError(f"{self.bd_bin} timed out after {BD_TIMEOUT_S}s") from e
        if proc.returncode != 0:
            raise TaskCommandError(
                f"Command failed: {' '.join(cmd)}",
                exit_code=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "",
            )
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")
