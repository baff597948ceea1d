"""Read-only SQLite access for the external Agent Mail and Beads stores."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .config import SQLITE_BUSY_TIMEOUT_MS


@contextmanager
def connect_readonly(path: str | Path) -> Iterator[sqlite3.Connection]:
    """Open ``path`` in read-only URI mode; the caller checks existence first."""
    uri = f"{Path(path).resolve().as_uri()}?mode=ro"
    conn = sqlite3.connect(uri, uri=True, timeout=SQLITE_BUSY_TIMEOUT_MS / 1000,
                           check_same_thread=False)
    try:
        conn.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        conn.row_factory = sqlite3.Row
        yield conn
    finally:
        conn.close()


def table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {r["name"] for r in conn.execute(f"PRAGMA table_info({table})")}
