"""JSON endpoints polled by the orchestration dashboard."""

import logging
import time
import traceback
from datetime import datetime, timezone

from fastapi import APIRouter, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from . import config
from .aggregator import build_orchestration, empty_orchestration
from .cache import make_key
from .models import AssignRequest
from .projects import projects_from_tasks, task_count_by_project
from .sources import SourceUnavailable, TaskCommandError
from .timeseries import VALID_BUCKET_SIZES, VALID_RANGES, get_token_time_series
from .usage import USAGE_RANGES, get_agent_usage, get_all_agent_usage, sum_usage

logger = logging.getLogger(__name__)

router = APIRouter()


def _error_body(error: str, exc: Exception, **extra) -> dict:
    body = {"error": error, "message": str(exc) or type(exc).__name__, **extra}
    if config.ENVIRONMENT != "production":
        body["stack"] = "".join(traceback.format_exception(exc))
    return body


def _invalid(param: str, valid: tuple[str, ...]) -> JSONResponse:
    return JSONResponse(status_code=400, content={
        "error": f"Invalid {param} parameter",
        "message": f"{param} must be one of: {', '.join(valid)}",
        "validValues": list(valid),
    })


# ── Orchestration ──

@router.get("/api/orchestration")
def orchestration(request: Request, project: str | None = None, agent: str | None = None):
    state = request.app.state
    key = make_key(project, agent)
    hit = state.orchestration_cache.get(key)
    if hit:
        return hit[0]

    try:
        result = build_orchestration(state.mail_store, state.task_store, state.project_root,
                                     project=project or None, agent=agent or None)
    except Exception as e:
        logger.exception("Error building orchestration data")
        return JSONResponse(status_code=500, content={
            **empty_orchestration(),
            **_error_body("Failed to fetch orchestration data", e),
        })

    data = result.data
    if result.errors:
        data = {
            **data,
            "error": "Partial orchestration data",
            "message": "; ".join(f"{e['source']}: {e['message']}" for e in result.errors),
            "errors": result.errors,
        }
    else:
        state.orchestration_cache.set(key, data)
    return data


@router.post("/api/orchestration")
async def assign_task(request: Request):
    try:
        body = await request.json()
        req = AssignRequest.model_validate(body)
    except (ValueError, ValidationError) as e:
        return JSONResponse(status_code=400, content={
            "error": "Invalid request", "message": str(e)})

    if not req.taskId or not req.agentName:
        return JSONResponse(status_code=400, content={
            "error": "Missing required fields",
            "message": "taskId and agentName are required",
        })

    state = request.app.state
    try:
        result = await run_in_threadpool(state.task_store.assign_task, req.taskId, req.agentName)
    except TaskCommandError as e:
        logger.error("bd update %s failed (exit %s): %s", req.taskId, e.exit_code, e.stderr)
        return JSONResponse(status_code=500, content={
            "error": "Failed to assign task via bd CLI",
            "message": e.message,
            "exitCode": e.exit_code,
            "stdout": e.stdout,
            "stderr": e.stderr,
            "taskId": req.taskId,
            "agentName": req.agentName,
        })

    state.orchestration_cache.clear()
    return {
        "success": True,
        "taskId": req.taskId,
        "agentName": req.agentName,
        "message": f"Task {req.taskId} assigned to {req.agentName}",
        "output": result.stdout,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }


# ── Sparkline ──

def _empty_series(time_range: str, bucket_size: str) -> dict:
    return {"data": [], "totalTokens": 0, "totalCost": 0, "bucketCount": 0,
            "bucketSize": bucket_size, "range": time_range,
            "startTime": None, "endTime": None}


@router.get("/api/agents/sparkline")
def sparkline(
    request: Request,
    time_range: str = Query("24h", alias="range"),
    agent: str | None = None,
    session: str | None = None,
    bucket_size: str = Query("30min", alias="bucketSize"),
):
    time_range = time_range or "24h"
    bucket_size = bucket_size or "30min"
    if time_range not in VALID_RANGES:
        return _invalid("range", VALID_RANGES)
    if bucket_size not in VALID_BUCKET_SIZES:
        return _invalid("bucketSize", VALID_BUCKET_SIZES)

    state = request.app.state
    cache = state.sparkline_cache
    key = make_key(time_range, agent or None, session or None, bucket_size)

    hit = cache.get(key)
    if hit:
        data, age = hit
        logger.info("Sparkline cache HIT for %s (age: %.0fms)", key, age * 1000)
        return {**data, "cached": True, "cacheAge": round(age * 1000)}

    logger.info("Sparkline cache MISS for %s", key)
    started = time.perf_counter()
    try:
        result = get_token_time_series(
            time_range, bucket_size, state.project_root,
            agent_name=agent or None, session_id=session or None,
            claude_home=state.claude_home,
        )
    except Exception as e:
        logger.exception("Failed to fetch sparkline data")
        return JSONResponse(status_code=500, content={
            **_empty_series(time_range, bucket_size),
            **_error_body("Failed to fetch sparkline data", e),
        })
    result["fetchDuration"] = round((time.perf_counter() - started) * 1000)
    logger.info("Fetched %d buckets in %dms (%d tokens)",
                result["bucketCount"], result["fetchDuration"], result["totalTokens"])

    cache.set(key, result)
    return {**result, "cached": False, "cacheAge": 0}


@router.delete("/api/agents/sparkline")
def clear_sparkline_cache(request: Request):
    cleared = request.app.state.sparkline_cache.clear()
    return {
        "success": True,
        "message": f"Cache cleared ({cleared} entries removed)",
        "clearedEntries": cleared,
    }


# ── Usage totals ──

@router.get("/api/agents/usage")
def agent_usage(request: Request, time_range: str = Query("all", alias="range"),
                agent: str | None = None):
    if time_range not in USAGE_RANGES:
        return _invalid("range", USAGE_RANGES)
    state = request.app.state
    if agent:
        usage = get_agent_usage(agent, time_range, state.project_root, state.claude_home)
        return {"range": time_range, "agent": agent, "usage": usage.model_dump(by_alias=True)}
    by_agent = get_all_agent_usage(time_range, state.project_root, state.claude_home)
    total = sum_usage(by_agent.values())
    return {
        "range": time_range,
        "agents": {name: u.model_dump(by_alias=True) for name, u in by_agent.items()},
        "total": total.model_dump(by_alias=True),
    }


# ── Messages / projects ──

@router.get("/api/messages/{thread_id}")
def thread_messages(request: Request, thread_id: str):
    try:
        messages = request.app.state.mail_store.thread_messages(thread_id)
    except SourceUnavailable as e:
        logger.error("Error fetching thread %s: %s", thread_id, e)
        return JSONResponse(status_code=500, content={"error": e.message, "messages": []})
    return {"messages": [m.model_dump() for m in messages]}


@router.get("/api/projects")
def projects(request: Request):
    body = {}
    try:
        tasks = request.app.state.task_store.list_tasks()
    except SourceUnavailable as e:
        tasks = e.partial
        body["error"] = e.message
    body["projects"] = projects_from_tasks(tasks)
    body["task_counts"] = task_count_by_project(tasks)
    return body
