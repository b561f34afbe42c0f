from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from agent_scheduler.config import Settings
from agent_scheduler.engine import SchedulerEngine
from agent_scheduler.executor import AgentJobExecutor, JobExecutor
from agent_scheduler.models import JobBusyError, JobValidationError, parse_job_input, serialize_job
from agent_scheduler.store import JobStore
from agent_scheduler.util import Clock, now_ms, sanitize_id

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def create_app(
    *,
    settings: Settings | None = None,
    store_path: Path | None = None,
    executor: JobExecutor | None = None,
    clock: Clock = now_ms,
    scheduler: AsyncIOScheduler | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI()
    engine = SchedulerEngine(
        store=JobStore(store_path or settings.store_path),
        executor=executor or AgentJobExecutor(settings=settings),
        clock=clock,
        default_timezone=settings.default_timezone,
        default_work_dir=str(settings.workspace_dir),
        scheduler=scheduler,
    )
    app.state.engine = engine
    started_at = _now_iso()

    @app.on_event("startup")
    async def _startup() -> None:
        await engine.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await engine.stop()

    def json_error(status_code: int, *, error: str, **extra: Any) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"error": error, **extra})

    def owner_or_error(owner_id: str) -> str | JSONResponse:
        try:
            return sanitize_id(owner_id)
        except ValueError as exc:
            return json_error(400, error="bad_request", message=str(exc))

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse(
            status_code=200,
            content={
                "status": "ok" if engine.started else "starting",
                "started_at": started_at,
                "jobs": len(engine.list_jobs()),
            },
        )

    @app.get("/v1/jobs")
    async def list_jobs(request: Request) -> JSONResponse:
        owner_id = request.query_params.get("owner_id")
        if owner_id is not None:
            owner = owner_or_error(owner_id)
            if isinstance(owner, JSONResponse):
                return owner
            owner_id = owner
        jobs = engine.list_jobs(owner_id)
        return JSONResponse(status_code=200, content={"jobs": [serialize_job(job) for job in jobs]})

    @app.post("/v1/jobs")
    async def create_job(request: Request) -> JSONResponse:
        try:
            body: Any = await request.json()
        except ValueError:
            return json_error(400, error="bad_request", message="Body must be JSON.")
        try:
            job_input = parse_job_input(body)
        except JobValidationError as exc:
            return json_error(400, error="bad_request", message=str(exc))

        job = await engine.create(job_input)
        return JSONResponse(status_code=201, content=serialize_job(job))

    @app.delete("/v1/owners/{owner_id}/jobs/{id_prefix}")
    async def remove_job(owner_id: str, id_prefix: str) -> Response:
        owner = owner_or_error(owner_id)
        if isinstance(owner, JSONResponse):
            return owner
        if not await engine.remove(owner, id_prefix):
            return json_error(404, error="job_unknown", owner_id=owner, id_prefix=id_prefix)
        return Response(status_code=204)

    @app.post("/v1/owners/{owner_id}/jobs/{id_prefix}/run")
    async def run_job(owner_id: str, id_prefix: str) -> JSONResponse:
        owner = owner_or_error(owner_id)
        if isinstance(owner, JSONResponse):
            return owner
        try:
            started = await engine.force_run(owner, id_prefix)
        except JobBusyError as exc:
            return json_error(409, error="job_running", job_id=exc.job_id)
        if not started:
            return json_error(404, error="job_unknown", owner_id=owner, id_prefix=id_prefix)
        return JSONResponse(status_code=202, content={"status": "started"})

    async def _set_enabled(owner_id: str, id_prefix: str, enabled: bool) -> JSONResponse:
        owner = owner_or_error(owner_id)
        if isinstance(owner, JSONResponse):
            return owner
        job = await engine.set_enabled(owner, id_prefix, enabled)
        if job is None:
            return json_error(404, error="job_unknown", owner_id=owner, id_prefix=id_prefix)
        return JSONResponse(status_code=200, content=serialize_job(job))

    @app.post("/v1/owners/{owner_id}/jobs/{id_prefix}/enable")
    async def enable_job(owner_id: str, id_prefix: str) -> JSONResponse:
        return await _set_enabled(owner_id, id_prefix, True)

    @app.post("/v1/owners/{owner_id}/jobs/{id_prefix}/disable")
    async def disable_job(owner_id: str, id_prefix: str) -> JSONResponse:
        return await _set_enabled(owner_id, id_prefix, False)

    @app.get("/v1/owners/{owner_id}/timezone")
    async def get_timezone(owner_id: str) -> JSONResponse:
        owner = owner_or_error(owner_id)
        if isinstance(owner, JSONResponse):
            return owner
        return JSONResponse(status_code=200, content={"owner_id": owner, "timezone": engine.get_timezone(owner)})

    @app.put("/v1/owners/{owner_id}/timezone")
    async def set_timezone(owner_id: str, request: Request) -> JSONResponse:
        owner = owner_or_error(owner_id)
        if isinstance(owner, JSONResponse):
            return owner
        try:
            body: Any = await request.json()
        except ValueError:
            return json_error(400, error="bad_request", message="Body must be JSON.")
        tz = body.get("timezone") if isinstance(body, dict) else None
        if not isinstance(tz, str) or not tz.strip():
            return json_error(400, error="bad_request", message="timezone must be a non-empty string.")
        try:
            await engine.set_timezone(owner, tz)
        except JobValidationError as exc:
            return json_error(400, error="bad_request", message=str(exc))
        return JSONResponse(status_code=200, content={"owner_id": owner, "timezone": engine.get_timezone(owner)})

    return app


app = create_app()
