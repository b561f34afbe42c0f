from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

from agent_scheduler.util import iso_from_ms, sanitize_id

JobStatus = Literal["ok", "error", "skipped"]
JobMode = Literal["once", "recurring"]

STORE_VERSION = 1
_NAME_LIMIT = 50
_JOB_STATUSES = ("ok", "error", "skipped")


class JobValidationError(ValueError):
    pass


class JobBusyError(RuntimeError):
    def __init__(self, *, job_id: str) -> None:
        super().__init__(f"Job already running: {job_id}")
        self.job_id = job_id


@dataclass(frozen=True)
class AtSchedule:
    at: str
    kind: Literal["at"] = field(default="at", init=False)


@dataclass(frozen=True)
class EverySchedule:
    every_ms: int
    anchor_ms: int | None = None
    kind: Literal["every"] = field(default="every", init=False)


@dataclass(frozen=True)
class CronSchedule:
    expr: str
    tz: str | None = None
    kind: Literal["cron"] = field(default="cron", init=False)


ScheduleDescriptor = AtSchedule | EverySchedule | CronSchedule


@dataclass
class JobState:
    next_run_at_ms: int | None = None
    running_at_ms: int | None = None
    last_run_at_ms: int | None = None
    last_status: JobStatus | None = None
    last_error: str | None = None
    last_duration_ms: int | None = None
    consecutive_errors: int = 0


@dataclass
class ScheduledJob:
    id: str
    name: str
    owner_id: str
    work_dir: str
    prompt: str
    schedule: ScheduleDescriptor
    enabled: bool = True
    delete_after_run: bool = False
    created_at: str = ""
    user_timezone: str | None = None
    state: JobState = field(default_factory=JobState)

    @property
    def is_running(self) -> bool:
        return self.state.running_at_ms is not None


@dataclass
class StoreFile:
    version: int = STORE_VERSION
    jobs: list[ScheduledJob] = field(default_factory=list)
    timezones: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class JobInput:
    prompt: str
    schedule: ScheduleDescriptor
    owner_id: str
    mode: JobMode = "recurring"
    work_dir: str | None = None
    name: str | None = None


def new_job_id() -> str:
    return str(uuid.uuid4())


def job_name_from_prompt(prompt: str) -> str:
    if len(prompt) > _NAME_LIMIT:
        return prompt[:_NAME_LIMIT] + "..."
    return prompt


def new_job(job_input: JobInput, *, work_dir: str, created_at_ms: int, user_timezone: str | None) -> ScheduledJob:
    return ScheduledJob(
        id=new_job_id(),
        name=job_input.name or job_name_from_prompt(job_input.prompt),
        owner_id=job_input.owner_id,
        work_dir=job_input.work_dir or work_dir,
        prompt=job_input.prompt,
        schedule=job_input.schedule,
        enabled=True,
        delete_after_run=job_input.mode == "once",
        created_at=iso_from_ms(created_at_ms),
        user_timezone=user_timezone,
    )


def _sanitize_string(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise JobValidationError(f"{field_name} must be a string")
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed


def _require_int(value: Any, field_name: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise JobValidationError(f"{field_name} must be a number")
    return int(value)


def _optional_int(value: Any, field_name: str) -> int | None:
    if value is None:
        return None
    return _require_int(value, field_name)


def parse_schedule(value: Any) -> ScheduleDescriptor:
    if not isinstance(value, dict):
        raise JobValidationError("schedule must be an object")

    kind = value.get("kind")
    if kind == "at":
        at = value.get("at")
        if not isinstance(at, str):
            raise JobValidationError("schedule.at must be a string")
        return AtSchedule(at=at)

    if kind == "every":
        every_ms = _require_int(value.get("everyMs", value.get("every_ms")), "schedule.everyMs")
        anchor_ms = _optional_int(value.get("anchorMs", value.get("anchor_ms")), "schedule.anchorMs")
        return EverySchedule(every_ms=every_ms, anchor_ms=anchor_ms)

    if kind == "cron":
        expr = value.get("expr")
        if not isinstance(expr, str):
            raise JobValidationError("schedule.expr must be a string")
        tz = _sanitize_string(value.get("tz"), "schedule.tz")
        return CronSchedule(expr=expr, tz=tz)

    raise JobValidationError("schedule.kind must be at, every, or cron")


def serialize_schedule(schedule: ScheduleDescriptor) -> dict[str, Any]:
    if isinstance(schedule, AtSchedule):
        return {"kind": "at", "at": schedule.at}
    if isinstance(schedule, EverySchedule):
        payload: dict[str, Any] = {"kind": "every", "everyMs": schedule.every_ms}
        if schedule.anchor_ms is not None:
            payload["anchorMs"] = schedule.anchor_ms
        return payload
    payload = {"kind": "cron", "expr": schedule.expr}
    if schedule.tz is not None:
        payload["tz"] = schedule.tz
    return payload


_STATE_FIELDS = (
    ("next_run_at_ms", "nextRunAtMs"),
    ("running_at_ms", "runningAtMs"),
    ("last_run_at_ms", "lastRunAtMs"),
    ("last_status", "lastStatus"),
    ("last_error", "lastError"),
    ("last_duration_ms", "lastDurationMs"),
)


def serialize_state(state: JobState) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for attr, key in _STATE_FIELDS:
        value = getattr(state, attr)
        if value is not None:
            payload[key] = value
    payload["consecutiveErrors"] = state.consecutive_errors
    return payload


def parse_state(value: Any) -> JobState:
    if value is None:
        return JobState()
    if not isinstance(value, dict):
        raise JobValidationError("state must be an object")

    last_status = value.get("lastStatus")
    if last_status is not None and last_status not in _JOB_STATUSES:
        raise JobValidationError(f"state.lastStatus is invalid: {last_status!r}")
    last_error = value.get("lastError")
    if last_error is not None and not isinstance(last_error, str):
        last_error = str(last_error)

    return JobState(
        next_run_at_ms=_optional_int(value.get("nextRunAtMs"), "state.nextRunAtMs"),
        running_at_ms=_optional_int(value.get("runningAtMs"), "state.runningAtMs"),
        last_run_at_ms=_optional_int(value.get("lastRunAtMs"), "state.lastRunAtMs"),
        last_status=last_status,
        last_error=last_error,
        last_duration_ms=_optional_int(value.get("lastDurationMs"), "state.lastDurationMs"),
        consecutive_errors=_optional_int(value.get("consecutiveErrors"), "state.consecutiveErrors") or 0,
    )


def serialize_job(job: ScheduledJob) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": job.id,
        "name": job.name,
        "ownerId": job.owner_id,
        "workDir": job.work_dir,
        "prompt": job.prompt,
        "schedule": serialize_schedule(job.schedule),
        "enabled": job.enabled,
        "deleteAfterRun": job.delete_after_run,
        "createdAt": job.created_at,
    }
    if job.user_timezone is not None:
        payload["userTimezone"] = job.user_timezone
    payload["state"] = serialize_state(job.state)
    return payload


def parse_job(value: Any) -> ScheduledJob:
    if not isinstance(value, dict):
        raise JobValidationError("job must be an object")

    job_id = value.get("id")
    if not isinstance(job_id, str) or not job_id:
        raise JobValidationError("job.id is required")
    owner_id = value.get("ownerId")
    if owner_id is None or isinstance(owner_id, bool):
        raise JobValidationError("job.ownerId is required")
    prompt = value.get("prompt")
    if not isinstance(prompt, str):
        raise JobValidationError("job.prompt must be a string")

    return ScheduledJob(
        id=job_id,
        name=str(value.get("name") or job_name_from_prompt(prompt)),
        owner_id=str(owner_id),
        work_dir=str(value.get("workDir") or "."),
        prompt=prompt,
        schedule=parse_schedule(value.get("schedule")),
        enabled=bool(value.get("enabled", True)),
        delete_after_run=bool(value.get("deleteAfterRun", False)),
        created_at=str(value.get("createdAt") or ""),
        user_timezone=_sanitize_string(value.get("userTimezone"), "job.userTimezone"),
        state=parse_state(value.get("state")),
    )


def serialize_store(store: StoreFile) -> dict[str, Any]:
    return {
        "version": STORE_VERSION,
        "jobs": [serialize_job(job) for job in store.jobs],
        "timezones": dict(store.timezones),
    }


def parse_store(payload: Any) -> StoreFile:
    if not isinstance(payload, dict):
        return StoreFile()

    raw_jobs = payload.get("jobs")
    jobs = [parse_job(item) for item in raw_jobs if item] if isinstance(raw_jobs, list) else []

    raw_timezones = payload.get("timezones")
    timezones: dict[str, str] = {}
    if isinstance(raw_timezones, dict):
        timezones = {str(key): value for key, value in raw_timezones.items() if isinstance(value, str)}

    return StoreFile(version=STORE_VERSION, jobs=jobs, timezones=timezones)


def parse_job_input(payload: Any) -> JobInput:
    if not isinstance(payload, dict):
        raise JobValidationError("Payload must be an object")

    prompt = _sanitize_string(payload.get("prompt") or payload.get("text"), "prompt")
    if not prompt:
        raise JobValidationError("prompt is required")

    owner_value = _sanitize_string(payload.get("owner_id"), "owner_id")
    if not owner_value:
        raise JobValidationError("owner_id is required")
    try:
        owner_id = sanitize_id(owner_value)
    except ValueError as exc:
        raise JobValidationError(str(exc)) from exc

    mode = str(payload.get("mode") or "recurring").strip().lower()
    if mode not in ("once", "recurring"):
        raise JobValidationError("mode must be once or recurring")

    return JobInput(
        prompt=prompt,
        schedule=parse_schedule(payload.get("schedule")),
        owner_id=owner_id,
        mode=mode,
        work_dir=_sanitize_string(payload.get("work_dir"), "work_dir"),
        name=_sanitize_string(payload.get("name"), "name"),
    )
