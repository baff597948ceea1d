"""FastAPI app entry point."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from . import config
from .cache import TTLCache
from .sources import AgentMailStore, BeadsTaskStore, MailStore, TaskStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    logger.info("Serving project %s (mail=%s, tasks=%s)", state.project_root,
                type(state.mail_store).__name__, type(state.task_store).__name__)
    yield
    # Caches are process-local; nothing outlives the app
    state.sparkline_cache.clear()
    state.orchestration_cache.clear()


def create_app(mail_store: MailStore | None = None, task_store: TaskStore | None = None,
               project_root: str | Path | None = None, claude_home: str | Path | None = None,
               sparkline_cache: TTLCache | None = None,
               orchestration_cache: TTLCache | None = None) -> FastAPI:
    app = FastAPI(title="Agent Dash", lifespan=lifespan)
    app.state.mail_store = mail_store or AgentMailStore(config.AGENT_MAIL_DB)
    app.state.task_store = task_store or BeadsTaskStore(config.CODE_ROOT, config.BD_BIN)
    app.state.project_root = Path(project_root or config.PROJECT_ROOT)
    app.state.claude_home = Path(claude_home or config.CLAUDE_HOME)
    if sparkline_cache is None:
        sparkline_cache = TTLCache(config.SPARKLINE_CACHE_TTL)
    if orchestration_cache is None:
        orchestration_cache = TTLCache(config.ORCHESTRATION_CACHE_TTL)
    app.state.sparkline_cache = sparkline_cache
    app.state.orchestration_cache = orchestration_cache

    from .api import router as api_router
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()


def run():
    import uvicorn

    logging.basicConfig(level=config.LOG_LEVEL,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=config.HOST, port=config.PORT)
