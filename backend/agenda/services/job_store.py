"""Durable job records and the operations workers use to lease them.

Both stores implement the same contract:

* ``schedule`` inserts a job, or returns the existing one when a live or
  completed job already carries the same dedup key.
* ``cancel`` only succeeds while the job is still ``scheduled``; a locked
  job is left to its handler, which re-checks live state before acting.
* ``claim_due`` leases due jobs with a compare-and-set on status/lease so
  two workers can never both hold the same job.
* ``complete``/``fail``/``retry`` are guarded by the lock token handed out at
  claim time; a worker whose lease was taken over cannot overwrite the new
  holder's outcome.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.metrics import JOBS_CANCELLED, JOBS_SCHEDULED, LEASES_EXPIRED
from agenda.models.enums import DEDUP_BLOCKING_STATUSES, JobStatus, JobType
from agenda.models.job import Job
from agenda.schemas.job import JobFilter

logger = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 5


class JobStore(Protocol):
    async def schedule(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        run_at: datetime,
        dedup_key: str | None = None,
        *,
        priority: int = 0,
        appointment_id: uuid.UUID | None = None,
        chain_id: uuid.UUID | None = None,
        chain_position: int | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> uuid.UUID: ...

    async def cancel(self, job_id: uuid.UUID) -> bool: ...

    async def list_pending(self, job_filter: JobFilter | None = None) -> list[Job]: ...

    async def get(self, job_id: uuid.UUID) -> Job | None: ...

    async def find_by_dedup_key(self, dedup_key: str) -> Job | None: ...

    async def claim_due(
        self,
        worker_id: str,
        *,
        now: datetime,
        lease: timedelta,
        job_type: JobType | None = None,
        limit: int = 10,
    ) -> list[Job]: ...

    async def reap_expired(self, now: datetime) -> int: ...

    async def complete(self, job_id: uuid.UUID, lock_token: str) -> bool: ...

    async def fail(self, job_id: uuid.UUID, lock_token: str, error: str) -> bool: ...

    async def retry(
        self, job_id: uuid.UUID, lock_token: str, run_at: datetime, error: str
    ) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _truncate_error(error: str) -> str:
    return error[:2000]


class SqlJobStore:
    """Job store backed by the ``jobs`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _find_blocking(self, db: AsyncSession, dedup_key: str) -> Job | None:
        result = await db.execute(
            select(Job)
            .where(
                Job.dedup_key == dedup_key,
                Job.status.in_([s.value for s in DEDUP_BLOCKING_STATUSES]),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def schedule(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        run_at: datetime,
        dedup_key: str | None = None,
        *,
        priority: int = 0,
        appointment_id: uuid.UUID | None = None,
        chain_id: uuid.UUID | None = None,
        chain_position: int | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> uuid.UUID:
        async with self._session_factory() as db:
            if dedup_key:
                existing = await self._find_blocking(db, dedup_key)
                if existing:
                    logger.info(
                        "job_schedule_deduplicated",
                        job_id=str(existing.id),
                        dedup_key=dedup_key,
                        status=existing.status,
                    )
                    return existing.id

            job = Job(
                id=uuid.uuid4(),
                job_type=job_type.value,
                payload=payload,
                run_at=run_at,
                status=JobStatus.SCHEDULED.value,
                priority=priority,
                attempts=0,
                max_attempts=max_attempts,
                dedup_key=dedup_key,
                appointment_id=appointment_id,
                chain_id=chain_id,
                chain_position=chain_position,
            )
            db.add(job)
            try:
                await db.commit()
            except IntegrityError:
                # Another writer inserted the same dedup key between our check and insert.
                await db.rollback()
                if dedup_key:
                    existing = await self._find_blocking(db, dedup_key)
                    if existing:
                        logger.info(
                            "job_schedule_deduplicated",
                            job_id=str(existing.id),
                            dedup_key=dedup_key,
                            status=existing.status,
                        )
                        return existing.id
                raise

        JOBS_SCHEDULED.labels(job_type=job_type.value).inc()
        logger.info(
            "job_scheduled",
            job_id=str(job.id),
            job_type=job_type.value,
            run_at=run_at.isoformat(),
            dedup_key=dedup_key,
        )
        return job.id

    async def cancel(self, job_id: uuid.UUID) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.SCHEDULED.value)
                .values(status=JobStatus.CANCELLED.value, finished_at=_utcnow())
                .returning(Job.job_type)
                .execution_options(synchronize_session=False)
            )
            row = result.first()
            await db.commit()

        if row is None:
            logger.info("job_cancel_noop", job_id=str(job_id))
            return False
        JOBS_CANCELLED.labels(job_type=row[0]).inc()
        logger.info("job_cancelled", job_id=str(job_id), job_type=row[0])
        return True

    async def list_pending(self, job_filter: JobFilter | None = None) -> list[Job]:
        job_filter = job_filter or JobFilter()
        stmt = select(Job).where(Job.status.in_([s.value for s in job_filter.statuses]))
        if job_filter.job_type:
            stmt = stmt.where(Job.job_type == job_filter.job_type.value)
        if job_filter.appointment_id:
            stmt = stmt.where(Job.appointment_id == job_filter.appointment_id)
        if job_filter.chain_id:
            stmt = stmt.where(Job.chain_id == job_filter.chain_id)
        if job_filter.due_before:
            stmt = stmt.where(Job.run_at <= job_filter.due_before)
        stmt = stmt.order_by(Job.run_at.asc()).limit(job_filter.limit)

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get(self, job_id: uuid.UUID) -> Job | None:
        async with self._session_factory() as db:
            return await db.get(Job, job_id)

    async def find_by_dedup_key(self, dedup_key: str) -> Job | None:
        async with self._session_factory() as db:
            return await self._find_blocking(db, dedup_key)

    @staticmethod
    def _claimable(now: datetime):
        return or_(
            and_(Job.status == JobStatus.SCHEDULED.value, Job.run_at <= now),
            and_(
                Job.status == JobStatus.LOCKED.value,
                Job.lease_expires_at < now,
                Job.attempts < Job.max_attempts,
            ),
        )

    async def claim_due(
        self,
        worker_id: str,
        *,
        now: datetime,
        lease: timedelta,
        job_type: JobType | None = None,
        limit: int = 10,
    ) -> list[Job]:
        if limit <= 0:
            return []

        async with self._session_factory() as db:
            stmt = select(Job.id).where(self._claimable(now))
            if job_type:
                stmt = stmt.where(Job.job_type == job_type.value)
            # SKIP LOCKED keeps concurrent workers off each other's candidates on
            # PostgreSQL; the conditional UPDATE below is what guarantees exclusivity.
            stmt = (
                stmt.order_by(Job.priority.desc(), Job.run_at.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            candidate_ids = (await db.execute(stmt)).scalars().all()

            claimed_ids: list[uuid.UUID] = []
            for job_id in candidate_ids:
                result = await db.execute(
                    update(Job)
                    .where(Job.id == job_id, self._claimable(now))
                    .values(
                        status=JobStatus.LOCKED.value,
                        lock_token=uuid.uuid4().hex,
                        locked_by=worker_id,
                        lease_expires_at=now + lease,
                        attempts=Job.attempts + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(job_id)
            await db.commit()

            if not claimed_ids:
                return []
            result = await db.execute(
                select(Job)
                .where(Job.id.in_(claimed_ids))
                .order_by(Job.priority.desc(), Job.run_at.asc())
            )
            jobs = list(result.scalars().all())

        for job in jobs:
            logger.info(
                "job_claimed",
                job_id=str(job.id),
                job_type=job.job_type,
                attempt=job.attempts,
                worker_id=worker_id,
            )
        return jobs

    async def reap_expired(self, now: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(
                    Job.status == JobStatus.LOCKED.value,
                    Job.lease_expires_at < now,
                    Job.attempts >= Job.max_attempts,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    lock_token=None,
                    lease_expires_at=None,
                    finished_at=now,
                    last_error="lease expired with no attempts left",
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        count = result.rowcount or 0
        if count:
            LEASES_EXPIRED.inc(count)
            logger.warning("job_leases_expired_failed", count=count)
        return count

    async def _transition(self, job_id: uuid.UUID, token: str, **values: Any) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.LOCKED.value,
                    Job.lock_token == token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            logger.warning("job_lease_lost", job_id=str(job_id), target=values.get("status"))
            return False
        return True

    async def complete(self, job_id: uuid.UUID, lock_token: str) -> bool:
        return await self._transition(
            job_id,
            lock_token,
            status=JobStatus.DONE.value,
            lock_token=None,
            lease_expires_at=None,
            last_error=None,
            finished_at=_utcnow(),
        )

    async def fail(self, job_id: uuid.UUID, lock_token: str, error: str) -> bool:
        return await self._transition(
            job_id,
            lock_token,
            status=JobStatus.FAILED.value,
            lock_token=None,
            lease_expires_at=None,
            last_error=_truncate_error(error),
            finished_at=_utcnow(),
        )

    async def retry(
        self, job_id: uuid.UUID, lock_token: str, run_at: datetime, error: str
    ) -> bool:
        return await self._transition(
            job_id,
            lock_token,
            status=JobStatus.SCHEDULED.value,
            lock_token=None,
            locked_by=None,
            lease_expires_at=None,
            run_at=run_at,
            last_error=_truncate_error(error),
        )


_JOB_FIELDS = (
    "id",
    "job_type",
    "payload",
    "run_at",
    "status",
    "priority",
    "attempts",
    "max_attempts",
    "lock_token",
    "locked_by",
    "lease_expires_at",
    "last_error",
    "dedup_key",
    "appointment_id",
    "chain_id",
    "chain_position",
    "created_at",
    "updated_at",
    "finished_at",
)


class InMemoryJobStore:
    """Process-local store with the same contract as ``SqlJobStore``.

    Used by tests and single-process development runs. Returned jobs are
    snapshots; mutating them does not change the stored record.
    """

    def __init__(self) -> None:
        self._jobs: dict[uuid.UUID, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _snapshot(record: dict[str, Any]) -> Job:
        return Job(**{field: record[field] for field in _JOB_FIELDS})

    def _blocking(self, dedup_key: str) -> dict[str, Any] | None:
        for record in self._jobs.values():
            if record["dedup_key"] == dedup_key and record["status"] in DEDUP_BLOCKING_STATUSES:
                return record
        return None

    async def schedule(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        run_at: datetime,
        dedup_key: str | None = None,
        *,
        priority: int = 0,
        appointment_id: uuid.UUID | None = None,
        chain_id: uuid.UUID | None = None,
        chain_position: int | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> uuid.UUID:
        async with self._lock:
            if dedup_key:
                existing = self._blocking(dedup_key)
                if existing:
                    return existing["id"]
            now = _utcnow()
            job_id = uuid.uuid4()
            self._jobs[job_id] = {
                "id": job_id,
                "job_type": job_type.value,
                "payload": dict(payload),
                "run_at": run_at,
                "status": JobStatus.SCHEDULED.value,
                "priority": priority,
                "attempts": 0,
                "max_attempts": max_attempts,
                "lock_token": None,
                "locked_by": None,
                "lease_expires_at": None,
                "last_error": None,
                "dedup_key": dedup_key,
                "appointment_id": appointment_id,
                "chain_id": chain_id,
                "chain_position": chain_position,
                "created_at": now,
                "updated_at": now,
                "finished_at": None,
            }
        JOBS_SCHEDULED.labels(job_type=job_type.value).inc()
        return job_id

    async def cancel(self, job_id: uuid.UUID) -> bool:
        async with self._lock:
            record = self._jobs.get(job_id)
            if record is None or record["status"] != JobStatus.SCHEDULED:
                return False
            record["status"] = JobStatus.CANCELLED.value
            record["finished_at"] = _utcnow()
        JOBS_CANCELLED.labels(job_type=record["job_type"]).inc()
        return True

    async def list_pending(self, job_filter: JobFilter | None = None) -> list[Job]:
        job_filter = job_filter or JobFilter()
        async with self._lock:
            records = [
                r
                for r in self._jobs.values()
                if r["status"] in job_filter.statuses
                and (job_filter.job_type is None or r["job_type"] == job_filter.job_type)
                and (job_filter.appointment_id is None or r["appointment_id"] == job_filter.appointment_id)
                and (job_filter.chain_id is None or r["chain_id"] == job_filter.chain_id)
                and (job_filter.due_before is None or r["run_at"] <= job_filter.due_before)
            ]
            records.sort(key=lambda r: r["run_at"])
            return [self._snapshot(r) for r in records[: job_filter.limit]]

    async def get(self, job_id: uuid.UUID) -> Job | None:
        async with self._lock:
            record = self._jobs.get(job_id)
            return self._snapshot(record) if record else None

    async def find_by_dedup_key(self, dedup_key: str) -> Job | None:
        async with self._lock:
            record = self._blocking(dedup_key)
            return self._snapshot(record) if record else None

    @staticmethod
    def _is_claimable(record: dict[str, Any], now: datetime) -> bool:
        if record["status"] == JobStatus.SCHEDULED:
            return record["run_at"] <= now
        if record["status"] == JobStatus.LOCKED:
            return (
                record["lease_expires_at"] is not None
                and record["lease_expires_at"] < now
                and record["attempts"] < record["max_attempts"]
            )
        return False

    async def claim_due(
        self,
        worker_id: str,
        *,
        now: datetime,
        lease: timedelta,
        job_type: JobType | None = None,
        limit: int = 10,
    ) -> list[Job]:
        if limit <= 0:
            return []
        async with self._lock:
            candidates = [
                r
                for r in self._jobs.values()
                if self._is_claimable(r, now) and (job_type is None or r["job_type"] == job_type)
            ]
            candidates.sort(key=lambda r: (-r["priority"], r["run_at"]))
            claimed = []
            for record in candidates[:limit]:
                record["status"] = JobStatus.LOCKED.value
                record["lock_token"] = uuid.uuid4().hex
                record["locked_by"] = worker_id
                record["lease_expires_at"] = now + lease
                record["attempts"] += 1
                claimed.append(self._snapshot(record))
            return claimed

    async def reap_expired(self, now: datetime) -> int:
        count = 0
        async with self._lock:
            for record in self._jobs.values():
                if (
                    record["status"] == JobStatus.LOCKED
                    and record["lease_expires_at"] is not None
                    and record["lease_expires_at"] < now
                    and record["attempts"] >= record["max_attempts"]
                ):
                    record.update(
                        status=JobStatus.FAILED.value,
                        lock_token=None,
                        lease_expires_at=None,
                        finished_at=now,
                        last_error="lease expired with no attempts left",
                    )
                    count += 1
        if count:
            LEASES_EXPIRED.inc(count)
        return count

    async def _transition(self, job_id: uuid.UUID, token: str, **values: Any) -> bool:
        async with self._lock:
            record = self._jobs.get(job_id)
            if (
                record is None
                or record["status"] != JobStatus.LOCKED
                or record["lock_token"] != token
            ):
                return False
            record.update(values)
            record["updated_at"] = _utcnow()
            return True

    async def complete(self, job_id: uuid.UUID, lock_token: str) -> bool:
        return await self._transition(
            job_id,
            lock_token,
            status=JobStatus.DONE.value,
            lock_token=None,
            lease_expires_at=None,
            last_error=None,
            finished_at=_utcnow(),
        )

    async def fail(self, job_id: uuid.UUID, lock_token: str, error: str) -> bool:
        return await self._transition(
            job_id,
            lock_token,
            status=JobStatus.FAILED.value,
            lock_token=None,
            lease_expires_at=None,
            last_error=_truncate_error(error),
            finished_at=_utcnow(),
        )

    async def retry(
        self, job_id: uuid.UUID, lock_token: str, run_at: datetime, error: str
    ) -> bool:
        return await self._transition(
            job_id,
            lock_token,
            status=JobStatus.SCHEDULED.value,
            lock_token=None,
            locked_by=None,
            lease_expires_at=None,
            run_at=run_at,
            last_error=_truncate_error(error),
        )
