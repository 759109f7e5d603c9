"""Polls the job store, leases due jobs and runs their handlers.

One ``tick`` reaps dead leases, claims up to the free concurrency slots of
each job type and starts the claimed jobs as tasks. Failures are
classified at this boundary:

* ``PermanentDataError``, invalid payloads and unknown job types fail the
  job immediately.
* Anything else is retried with exponential backoff until the job runs out
  of attempts.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import sentry_sdk
import structlog
from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError

from agenda.exceptions import PermanentDataError
from agenda.jobs.registry import resolve_job_handler
from agenda.metrics import JOB_DURATION, JOB_RUNS, JOBS_IN_FLIGHT
from agenda.models.enums import JobType
from agenda.models.job import Job
from agenda.services.context import SchedulerContext

logger = structlog.get_logger()

PERMANENT_ERRORS = (PermanentDataError, ValidationError)


def retry_delay(attempts: int, base_seconds: int) -> timedelta:
    """Backoff before the next attempt: base, 2*base, 4*base, ..."""
    return timedelta(seconds=base_seconds * 2 ** max(attempts - 1, 0))


class Dispatcher:
    def __init__(self, ctx: SchedulerContext, worker_id: str | None = None):
        self._ctx = ctx
        self.worker_id = worker_id or ctx.settings.worker_name
        self._limits = {
            JobType.REMINDER: ctx.settings.REMINDER_CONCURRENCY,
            JobType.REPETITION_LINK: ctx.settings.REPETITION_CONCURRENCY,
        }
        self._in_flight = {job_type: 0 for job_type in JobType}
        self._tasks: set[asyncio.Task] = set()
        self._scheduler: AsyncIOScheduler | None = None

    def free_slots(self, job_type: JobType) -> int:
        settings = self._ctx.settings
        per_type = self._limits[job_type] - self._in_flight[job_type]
        total = settings.MAX_CONCURRENCY - sum(self._in_flight.values())
        return max(0, min(per_type, total, settings.DISPATCHER_BATCH_SIZE))

    def _claim_order(self) -> list[JobType]:
        settings = self._ctx.settings
        priorities = {
            JobType.REMINDER: settings.REMINDER_PRIORITY,
            JobType.REPETITION_LINK: settings.REPETITION_PRIORITY,
        }
        return sorted(JobType, key=lambda t: priorities[t], reverse=True)

    async def tick(self) -> int:
        """Claim due jobs into the free slots and start their handlers.

        Returns the number of jobs started. Handlers outlive the tick and hold
        their slot until they finish, so a slow job type only uses up its own
        slots.
        """
        store = self._ctx.store
        now = self._ctx.now()
        lease = timedelta(seconds=self._ctx.settings.JOB_LEASE_SECONDS)

        await store.reap_expired(now)

        claimed: list[Job] = []
        for job_type in self._claim_order():
            slots = self.free_slots(job_type)
            if slots <= 0:
                continue
            jobs = await store.claim_due(
                self.worker_id, now=now, lease=lease, job_type=job_type, limit=slots
            )
            for job in jobs:
                self._in_flight[job_type] += 1
            claimed.extend(jobs)

        if not claimed:
            return 0
        logger.info(
            "dispatcher_tick",
            worker_id=self.worker_id,
            claimed=len(claimed),
            running=len(self._tasks) + len(claimed),
        )
        for job in claimed:
            task = asyncio.create_task(self._run(job), name=f"job-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._task_done)
        return len(claimed)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Only store errors while recording the outcome get here; the lease
            # expires and the job is claimed again.
            logger.error("job_task_crashed", task=task.get_name(), error=f"{type(exc).__name__}: {exc}")
            sentry_sdk.capture_exception(exc)

    async def drain(self) -> None:
        """Wait until every started handler has finished."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self, job: Job) -> None:
        job_type = job.job_type
        log = logger.bind(job_id=str(job.id), job_type=job_type, attempt=job.attempts)
        JOBS_IN_FLIGHT.labels(job_type=job_type).inc()
        started = time.monotonic()
        try:
            try:
                handler = resolve_job_handler(job_type)
            except ValueError as exc:
                raise PermanentDataError(str(exc)) from exc
            await handler(self._ctx, job)
        except Exception as exc:
            await self._handle_failure(job, exc)
        else:
            if await self._ctx.store.complete(job.id, job.lock_token):
                JOB_RUNS.labels(job_type=job_type, status="done").inc()
                log.info("job_completed")
        finally:
            JOB_DURATION.labels(job_type=job_type).observe(time.monotonic() - started)
            JOBS_IN_FLIGHT.labels(job_type=job_type).dec()
            self._in_flight[JobType(job_type)] -= 1

    async def _handle_failure(self, job: Job, exc: Exception) -> None:
        store = self._ctx.store
        job_type = job.job_type
        error = f"{type(exc).__name__}: {exc}"
        log = logger.bind(job_id=str(job.id), job_type=job_type, attempt=job.attempts)

        if isinstance(exc, PERMANENT_ERRORS):
            if await store.fail(job.id, job.lock_token, error):
                JOB_RUNS.labels(job_type=job_type, status="failed").inc()
            log.error("job_failed_permanent", error=error)
            sentry_sdk.capture_exception(exc)
            return

        if job.attempts >= job.max_attempts:
            if await store.fail(job.id, job.lock_token, error):
                JOB_RUNS.labels(job_type=job_type, status="failed").inc()
            log.error("job_failed_retries_exhausted", error=error, max_attempts=job.max_attempts)
            sentry_sdk.capture_exception(exc)
            return

        delay = retry_delay(job.attempts, self._ctx.settings.RETRY_BACKOFF_SECONDS)
        run_at = self._ctx.now() + delay
        if await store.retry(job.id, job.lock_token, run_at, error):
            JOB_RUNS.labels(job_type=job_type, status="retried").inc()
        log.warning("job_retry_scheduled", error=error, retry_in=delay.total_seconds())

    def start(self) -> AsyncIOScheduler:
        """Drive ``tick`` from an APScheduler interval job on the running loop."""
        scheduler = AsyncIOScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.tick,
            "interval",
            seconds=self._ctx.settings.DISPATCHER_POLL_SECONDS,
            id="dispatcher_tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )

        def _job_error_listener(event):
            if event.exception:
                logger.error(
                    "dispatcher_tick_failed",
                    job_id=event.job_id,
                    error=str(event.exception),
                )

        scheduler.add_listener(_job_error_listener, EVENT_JOB_ERROR)
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "dispatcher_started",
            worker_id=self.worker_id,
            poll_seconds=self._ctx.settings.DISPATCHER_POLL_SECONDS,
        )
        return scheduler

    async def shutdown(self) -> None:
        """Stop polling, then let the running handlers finish."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        await self.drain()
        logger.info("dispatcher_stopped", worker_id=self.worker_id)
