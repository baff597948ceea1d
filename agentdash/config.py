import os
from pathlib import Path

PROJECT_ROOT = os.environ.get("AGENTDASH_PROJECT_ROOT", os.getcwd())
AGENT_MAIL_DB = os.environ.get(
    "AGENT_MAIL_DB", str(Path.home() / ".agent-mail" / "storage.sqlite3"))
CODE_ROOT = os.environ.get("AGENTDASH_CODE_ROOT", str(Path.home() / "code"))
CLAUDE_HOME = os.environ.get("CLAUDE_HOME", str(Path.home() / ".claude"))
BD_BIN = os.environ.get("BD_BIN", "bd")
ENVIRONMENT = os.environ.get("AGENTDASH_ENV", "development")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
HOST = os.environ.get("AGENTDASH_HOST", "127.0.0.1")
PORT = int(os.environ.get("AGENTDASH_PORT", "8000"))

SPARKLINE_CACHE_TTL = 30  # seconds
ORCHESTRATION_CACHE_TTL = 2  # seconds
POLL_INTERVAL_MS = 3000
SQLITE_BUSY_TIMEOUT_MS = 5000
BD_TIMEOUT_S = 30

ACTIVITY_LIMIT = 10
TASK_LIMIT = 100
WORKING_THRESHOLD_S = 600  # 10 minutes
IDLE_THRESHOLD_S = 3600  # 60 minutes
