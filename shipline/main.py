"""
shipline Trigger API.

Surrounding automation (a CI workflow, a merge hook) starts deployments here
and follows them until they finish. Runs execute as background tasks on the
server's event loop; their state lives in the in-memory run store.

Endpoints:
    POST /runs            start a run for a revision (202)
    GET  /runs            list runs, optionally for one revision
    GET  /runs/{run_id}   steps, per-target results, logs, outcome, endpoint
    GET  /health          liveness and target cluster

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .manifests import apply_registry, resolve_secret_env
from .models import PipelineRequest, Run, RunStatus
from .storage import db

app = FastAPI(title=settings.api_title, version=settings.api_version)

logger = logging.getLogger("shipline.api")

# runs in flight; the loop only keeps weak references to tasks
_background_tasks: Set[asyncio.Task] = set()


@app.middleware("http")
async def access_log(request: Request, call_next):
    """Log one line per request with its status and latency."""
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"{request.method} {request.url.path} -> {status_code} ({elapsed_ms}ms)",
            extra={
                "props": {
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    "elapsed_ms": elapsed_ms,
                    "client": request.client.host if request.client else None,
                }
            },
        )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    """Report liveness, the target cluster and how many runs are in flight."""
    config = settings.pipeline_config()
    return {
        "status": "ok",
        "version": settings.api_version,
        "simulate": settings.simulate,
        "cluster": config.cluster_label,
        "namespace": config.namespace,
        "active_runs": len(_background_tasks),
        "timestamp": time.time(),
    }


class TriggerResponse(BaseModel):
    """Accepted run: its id, the revision it deploys and its initial status."""

    run_id: str
    revision: str
    status: RunStatus


@app.post("/runs", response_model=TriggerResponse, status_code=202)
async def trigger_run(req: PipelineRequest):
    """
    Start deploying ``req.revision``.

    The request is validated, its secret environment references are
    resolved and bare artifact names get the server's registry prefix
    before anything runs; the pipeline itself continues in the
    background and is followed through ``GET /runs/{run_id}``.

    Raises:
        HTTPException: 422 if the request cannot be executed

    Note:
        Overlapping runs against one cluster are not serialized; callers keep
        a single active revision per target.
    """
    from .pipeline_runner import create_executor

    executor = create_executor(settings, storage=db)
    try:
        executor.validate_request(req)
        req.secrets = resolve_secret_env(req.secrets)
    except ValueError as e:
        raise HTTPException(422, str(e))
    apply_registry(req.artifacts, settings.registry)

    run = db.create_run(Run(revision=req.revision))
    logger.info(
        f"Run {run.id} accepted for revision {req.revision.id}",
        extra={
            "run_id": run.id,
            "revision": req.revision.id,
            "artifacts": [a.name for a in req.artifacts],
            "resource_count": len(req.resources),
        },
    )
    task = asyncio.get_running_loop().create_task(executor.run_pipeline(req, run))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return TriggerResponse(run_id=run.id, revision=req.revision.id, status=run.status)


@app.get("/runs", response_model=List[Run])
def list_runs(revision: Optional[str] = None):
    """List runs, newest revision first."""
    return db.list_runs(revision)


@app.get("/runs/{run_id}", response_model=Run)
def get_run(run_id: str):
    run = db.get_run(run_id)
    if run is None:
        raise HTTPException(404, "Run not found")
    return run


def _describe_validation_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    """Flatten pydantic errors into JSON-safe entries (``ctx`` may hold exceptions)."""
    described = []
    for err in exc.errors():
        entry = {"loc": list(err.get("loc", [])), "msg": str(err.get("msg", "")), "type": err.get("type")}
        if err.get("ctx"):
            entry["ctx"] = {key: str(value) for key, value in err["ctx"].items()}
        described.append(entry)
    return described


@app.exception_handler(RequestValidationError)
async def on_invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = _describe_validation_errors(exc)
    logger.warning(
        f"Rejected request to {request.url.path}: {len(errors)} validation error(s)",
        extra={"props": {"path": request.url.path, "errors": errors}},
    )
    return JSONResponse(status_code=422, content={"detail": errors})


@app.exception_handler(StarletteHTTPException)
async def on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning(
        f"{request.url.path} -> {exc.status_code}: {exc.detail}",
        extra={"props": {"path": request.url.path, "status": exc.status_code}},
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def on_unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    """Log the traceback; clients only see a generic 500."""
    logger.exception(f"Unhandled error serving {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})
