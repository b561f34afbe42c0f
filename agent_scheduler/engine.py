"""Timer-driven dispatch of scheduled jobs.

One ``SchedulerEngine`` owns the job collection. It keeps a single APScheduler
date job armed for the earliest pending run, executes due jobs one at a time
through a ``JobExecutor`` and flushes the collection to the ``JobStore``
after every mutation. Restart safety comes from two startup passes: stale
``running_at_ms`` markers are cleared, then overdue jobs are executed before
the timer is armed.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from agent_scheduler.backoff import error_backoff_ms
from agent_scheduler.executor import ExecutionResult, JobExecutor
from agent_scheduler.models import (
    AtSchedule,
    CronSchedule,
    JobBusyError,
    JobInput,
    JobStatus,
    JobValidationError,
    ScheduledJob,
    StoreFile,
    new_job,
)
from agent_scheduler.schedule import compute_next_run_at_ms
from agent_scheduler.store import JobStore
from agent_scheduler.util import Clock, now_ms

logger = logging.getLogger(__name__)

MAX_TIMER_DELAY_MS = 60_000
MIN_REFIRE_GAP_MS = 2_000
STUCK_RUN_TIMEOUT_MS = 2 * 3_600_000

TIMER_JOB_ID = "scheduler-tick"


def apply_job_result(
    job: ScheduledJob,
    *,
    status: JobStatus,
    error: str | None,
    started_at: int,
    ended_at: int,
) -> None:
    state = job.state
    state.running_at_ms = None
    state.last_run_at_ms = started_at
    state.last_status = status
    state.last_duration_ms = max(0, ended_at - started_at)
    state.last_error = error

    if status == "error":
        state.consecutive_errors += 1
    elif status == "ok":
        state.consecutive_errors = 0

    if isinstance(job.schedule, AtSchedule):
        # one-shot jobs never refire, whatever the outcome
        job.enabled = False
        state.next_run_at_ms = None
    elif status == "error" and job.enabled:
        backoff = error_backoff_ms(state.consecutive_errors)
        natural_next = compute_next_run_at_ms(job.schedule, ended_at)
        backoff_next = ended_at + backoff
        state.next_run_at_ms = max(natural_next, backoff_next) if natural_next is not None else backoff_next
        logger.info("Job %s: backoff %sms, next at %s", job.id, backoff, state.next_run_at_ms)
    elif job.enabled:
        natural_next = compute_next_run_at_ms(job.schedule, ended_at)
        if isinstance(job.schedule, CronSchedule):
            min_next = ended_at + MIN_REFIRE_GAP_MS
            state.next_run_at_ms = max(natural_next, min_next) if natural_next is not None else min_next
        else:
            state.next_run_at_ms = natural_next
    else:
        state.next_run_at_ms = None


class SchedulerEngine:
    def __init__(
        self,
        *,
        store: JobStore,
        executor: JobExecutor,
        clock: Clock = now_ms,
        default_timezone: str | None = None,
        default_work_dir: str = ".",
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._clock = clock
        self._default_timezone = default_timezone
        self._default_work_dir = default_work_dir
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._owns_scheduler = scheduler is None
        self._lock = asyncio.Lock()
        # serializes agent runs so a forced run never overlaps a tick
        self._run_lock = asyncio.Lock()

        self._data = StoreFile()
        self._started = False
        self._dispatching = False
        self._armed_delay_ms: int | None = None
        self._background: set[asyncio.Task[None]] = set()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def dispatching(self) -> bool:
        return self._dispatching

    @property
    def armed_delay_ms(self) -> int | None:
        return self._armed_delay_ms

    async def start(self) -> None:
        async with self._lock:
            if self._started:
                return
            self._data = await self._store.load()
            if not self._scheduler.running:
                self._scheduler.start()
            self._started = True

            now = self._clock()
            for job in self._data.jobs:
                running_at = job.state.running_at_ms
                if running_at is not None and now - running_at > STUCK_RUN_TIMEOUT_MS:
                    logger.warning("Clearing stale running marker for job %s", job.id)
                    job.state.running_at_ms = None

            for job in self._data.jobs:
                if job.enabled and job.state.next_run_at_ms is None:
                    job.state.next_run_at_ms = compute_next_run_at_ms(job.schedule, now)

            await self._persist()
            await self._run_missed_jobs()
            self._arm_timer()
            logger.info("Scheduler started with %d jobs", len(self._data.jobs))

    async def stop(self) -> None:
        async with self._lock:
            if not self._started:
                return
            self._started = False
            self._cancel_timer()
            if self._owns_scheduler:
                self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    async def create(self, job_input: JobInput) -> ScheduledJob:
        self._require_started()
        owner_timezone = self.get_timezone(job_input.owner_id)

        schedule = job_input.schedule
        if isinstance(schedule, CronSchedule) and owner_timezone and not (schedule.tz or "").strip():
            schedule = CronSchedule(expr=schedule.expr, tz=owner_timezone)

        now = self._clock()
        job = new_job(
            job_input,
            work_dir=self._default_work_dir,
            created_at_ms=now,
            user_timezone=owner_timezone,
        )
        job.schedule = schedule
        job.state.next_run_at_ms = compute_next_run_at_ms(schedule, now)

        self._data.jobs.append(job)
        await self._persist()
        self._arm_timer()
        logger.info("Created job %s for owner %s (next run %s)", job.id, job.owner_id, job.state.next_run_at_ms)
        return copy.deepcopy(job)

    def list_jobs(self, owner_id: str | None = None) -> list[ScheduledJob]:
        jobs = self._data.jobs
        if owner_id is not None:
            jobs = [job for job in jobs if job.owner_id == owner_id]
        return copy.deepcopy(list(jobs))

    async def remove(self, owner_id: str, id_prefix: str) -> bool:
        self._require_started()
        job = self._find(owner_id, id_prefix)
        if job is None:
            return False
        self._data.jobs = [item for item in self._data.jobs if item is not job]
        await self._persist()
        self._arm_timer()
        logger.info("Removed job %s", job.id)
        return True

    async def set_enabled(self, owner_id: str, id_prefix: str, enabled: bool) -> ScheduledJob | None:
        self._require_started()
        job = self._find(owner_id, id_prefix)
        if job is None:
            return None
        job.enabled = enabled
        if enabled:
            job.state.next_run_at_ms = compute_next_run_at_ms(job.schedule, self._clock())
        else:
            job.state.next_run_at_ms = None
        await self._persist()
        self._arm_timer()
        return copy.deepcopy(job)

    async def force_run(self, owner_id: str, id_prefix: str) -> bool:
        self._require_started()
        job = self._find(owner_id, id_prefix)
        if job is None:
            return False
        if job.is_running:
            raise JobBusyError(job_id=job.id)

        # Mark synchronously so a tick cannot pick the job up before the task runs.
        job.state.running_at_ms = self._clock()
        job.state.last_error = None
        task = asyncio.create_task(self._force_run(job))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    def get_timezone(self, owner_id: str) -> str | None:
        return self._data.timezones.get(owner_id) or self._default_timezone

    async def set_timezone(self, owner_id: str, tz: str) -> None:
        self._require_started()
        zone = tz.strip()
        try:
            ZoneInfo(zone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise JobValidationError(f"Invalid timezone: {tz}") from exc
        self._data.timezones[owner_id] = zone
        await self._persist()

    async def tick(self) -> None:
        if self._dispatching:
            self._arm_timer(delay_ms=MAX_TIMER_DELAY_MS)
            return

        self._dispatching = True
        try:
            now = self._clock()
            due = self._find_due_jobs(now)
            if not due:
                return

            for job in due:
                job.state.running_at_ms = now
                job.state.last_error = None
            await self._persist()

            for job in due:
                if not job.enabled or all(item is not job for item in self._data.jobs):
                    job.state.running_at_ms = None
                    logger.info("Skipping job %s: removed or disabled during dispatch", job.id)
                    await self._persist()
                    continue
                await self._execute_job(job)
        finally:
            self._dispatching = False
            self._arm_timer()

    async def _on_timer(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("Scheduler tick failed")

    async def _force_run(self, job: ScheduledJob) -> None:
        try:
            await self._execute_job(job)
        except Exception:
            logger.exception("Forced run of job %s failed", job.id)
        finally:
            self._arm_timer()

    async def _execute_job(self, job: ScheduledJob) -> None:
        async with self._run_lock:
            await self._execute_job_locked(job)

    async def _execute_job_locked(self, job: ScheduledJob) -> None:
        started_at = self._clock()
        job.state.running_at_ms = started_at
        job.state.last_error = None

        try:
            result = await self._executor.execute(job)
        except Exception as exc:
            logger.exception("Executor raised for job %s", job.id)
            result = ExecutionResult(status="error", error=str(exc) or type(exc).__name__)

        ended_at = self._clock()
        apply_job_result(
            job,
            status=result.status,
            error=result.error,
            started_at=started_at,
            ended_at=ended_at,
        )

        if isinstance(job.schedule, AtSchedule) and job.delete_after_run and result.status == "ok":
            self._data.jobs = [item for item in self._data.jobs if item is not job]
            logger.info("Deleted one-shot job %s", job.id)

        await self._persist()

    async def _run_missed_jobs(self) -> None:
        now = self._clock()
        missed = [
            job
            for job in self._data.jobs
            if job.enabled
            and not job.is_running
            and not (isinstance(job.schedule, AtSchedule) and job.state.last_status is not None)
            and job.state.next_run_at_ms is not None
            and now >= job.state.next_run_at_ms
        ]
        if not missed:
            return

        logger.info("Running %d missed jobs after restart", len(missed))
        for job in missed:
            await self._execute_job(job)

    def _find_due_jobs(self, now: int) -> list[ScheduledJob]:
        return [
            job
            for job in self._data.jobs
            if job.enabled
            and not job.is_running
            and job.state.next_run_at_ms is not None
            and now >= job.state.next_run_at_ms
        ]

    def _find(self, owner_id: str, id_prefix: str) -> ScheduledJob | None:
        if not id_prefix:
            return None
        for job in self._data.jobs:
            if job.owner_id == owner_id and job.id.startswith(id_prefix):
                return job
        return None

    def _next_wake_at_ms(self) -> int | None:
        earliest: int | None = None
        for job in self._data.jobs:
            # running jobs are picked up by the capped re-arm once they finish
            if not job.enabled or job.is_running:
                continue
            next_run = job.state.next_run_at_ms
            if next_run is not None and (earliest is None or next_run < earliest):
                earliest = next_run
        return earliest

    def _arm_timer(self, *, delay_ms: int | None = None) -> None:
        self._cancel_timer()
        if not self._started:
            return

        if delay_ms is None:
            next_at = self._next_wake_at_ms()
            if next_at is not None:
                delay_ms = min(max(next_at - self._clock(), 0), MAX_TIMER_DELAY_MS)
            elif any(job.enabled and job.is_running for job in self._data.jobs):
                delay_ms = MAX_TIMER_DELAY_MS
            else:
                return

        run_date = datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
        self._scheduler.add_job(
            self._on_timer,
            trigger=DateTrigger(run_date=run_date),
            id=TIMER_JOB_ID,
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
            max_instances=2,
        )
        self._armed_delay_ms = delay_ms

    def _cancel_timer(self) -> None:
        self._armed_delay_ms = None
        try:
            self._scheduler.remove_job(TIMER_JOB_ID)
        except JobLookupError:
            pass

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("Scheduler engine is not started")

    async def _persist(self) -> None:
        await self._store.save(self._data)
