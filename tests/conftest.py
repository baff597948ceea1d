import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from agentdash.main import create_app
from agentdash.sources import AgentMailStore, BeadsTaskStore
from agentdash.usage import session_log_dir

NOW = datetime(2025, 11, 21, 12, 0, 0, tzinfo=timezone.utc)

MAIL_SCHEMA = """
CREATE TABLE projects (id INTEGER PRIMARY KEY, slug TEXT, human_key TEXT, created_at TEXT);
CREATE TABLE agents (
    id INTEGER PRIMARY KEY, project_id INTEGER, name TEXT, program TEXT, model TEXT,
    task_description TEXT, inception_ts TEXT, last_active_ts TEXT
);
CREATE TABLE file_reservations (
    id INTEGER PRIMARY KEY, project_id INTEGER, agent_id INTEGER, path_pattern TEXT,
    exclusive INTEGER, reason TEXT, created_ts TEXT, expires_ts TEXT, released_ts TEXT
);
CREATE TABLE messages (
    id INTEGER PRIMARY KEY, project_id INTEGER, sender_id INTEGER, thread_id TEXT,
    subject TEXT, body_md TEXT, importance TEXT, ack_required INTEGER, created_ts TEXT
);
"""

BEADS_SCHEMA = """
CREATE TABLE issues (
    id TEXT PRIMARY KEY, title TEXT, description TEXT, status TEXT, priority INTEGER,
    issue_type TEXT, assignee TEXT, created_at TEXT, updated_at TEXT, closed_at TEXT
);
CREATE TABLE dependencies (issue_id TEXT, depends_on_id TEXT, type TEXT);
"""


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def ago(**kw) -> str:
    return iso(datetime.now(timezone.utc) - timedelta(**kw))


def usage_line(ts, inp=0, cc=0, cr=0, out=0, rtype="assistant") -> str:
    return json.dumps({
        "type": rtype,
        "message": {"usage": {
            "input_tokens": inp,
            "cache_creation_input_tokens": cc,
            "cache_read_input_tokens": cr,
            "output_tokens": out,
        }},
        "timestamp": ts,
    })


@pytest.fixture()
def project_root(tmp_path) -> Path:
    root = tmp_path / "code" / "jat"
    root.mkdir(parents=True)
    return root


@pytest.fixture()
def claude_home(tmp_path) -> Path:
    home = tmp_path / "claude-home"
    home.mkdir()
    return home


@pytest.fixture()
def write_session(project_root, claude_home):
    """Write ``<session>.jsonl`` under the project's log dir (and its agent file)."""

    def _write(session_id: str, lines: list[str], agent: str | None = None) -> Path:
        log_dir = session_log_dir(project_root, claude_home)
        log_dir.mkdir(parents=True, exist_ok=True)
        path = log_dir / f"{session_id}.jsonl"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        if agent is not None:
            claude_dir = project_root / ".claude"
            claude_dir.mkdir(exist_ok=True)
            (claude_dir / f"agent-{session_id}.txt").write_text(agent, encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def mail_db(tmp_path):
    """Build an Agent Mail DB. Returns (path, seed) where seed inserts rows."""
    path = tmp_path / "agent-mail.sqlite3"
    conn = sqlite3.connect(path)
    conn.executescript(MAIL_SCHEMA)
    conn.execute("INSERT INTO projects VALUES (1, 'jat', ?, '2025-11-01T00:00:00Z')",
                 (str(tmp_path / "code" / "jat"),))
    conn.execute("INSERT INTO projects VALUES (2, 'other', '/srv/other', '2025-11-01T00:00:00Z')")
    conn.commit()

    def seed(agents=(), reservations=(), messages=()):
        for a in agents:
            conn.execute(
                "INSERT INTO agents (id, project_id, name, program, model, task_description, "
                "inception_ts, last_active_ts) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (a["id"], a.get("project_id", 1), a["name"], a.get("program", "claude-code"),
                 a.get("model", "sonnet-4.5"), a.get("task_description", ""),
                 a.get("inception_ts", "2025-11-01T00:00:00Z"), a.get("last_active_ts")),
            )
        for r in reservations:
            conn.execute(
                "INSERT INTO file_reservations (id, project_id, agent_id, path_pattern, "
                "exclusive, reason, created_ts, expires_ts, released_ts) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (r["id"], r.get("project_id", 1), r["agent_id"], r.get("path_pattern", "src/**"),
                 r.get("exclusive", 1), r.get("reason"), r.get("created_ts", ago(minutes=5)),
                 r["expires_ts"], r.get("released_ts")),
            )
        for m in messages:
            conn.execute(
                "INSERT INTO messages (id, project_id, sender_id, thread_id, subject, body_md, "
                "importance, ack_required, created_ts) VALUES (?, 1, ?, ?, ?, ?, 'normal', 0, ?)",
                (m["id"], m["sender_id"], m.get("thread_id"), m.get("subject", ""),
                 m.get("body_md", ""), m["created_ts"]),
            )
        conn.commit()

    yield path, seed
    conn.close()


@pytest.fixture()
def beads_project(tmp_path):
    """Create ``<code>/<project>/.beads/beads.db`` with the given issues."""
    code_root = tmp_path / "code"
    code_root.mkdir(exist_ok=True)

    def _make(project: str, issues=(), deps=()) -> Path:
        beads_dir = code_root / project / ".beads"
        beads_dir.mkdir(parents=True, exist_ok=True)
        db = beads_dir / "beads.db"
        conn = sqlite3.connect(db)
        conn.executescript(BEADS_SCHEMA)
        for i in issues:
            conn.execute(
                "INSERT INTO issues VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (i["id"], i.get("title", i["id"]), i.get("description"), i.get("status", "open"),
                 i.get("priority", 2), i.get("issue_type", "task"), i.get("assignee"),
                 i.get("created_at", "2025-11-20T00:00:00Z"), i.get("updated_at"),
                 i.get("closed_at")),
            )
        conn.executemany("INSERT INTO dependencies VALUES (?, ?, ?)", deps)
        conn.commit()
        conn.close()
        return db

    _make.code_root = code_root
    return _make


@pytest.fixture()
def client(mail_db, beads_project, project_root, claude_home):
    app = create_app(
        mail_store=AgentMailStore(mail_db[0]),
        task_store=BeadsTaskStore(beads_project.code_root, "bd"),
        project_root=project_root,
        claude_home=claude_home,
    )
    with TestClient(app) as c:
        yield c
