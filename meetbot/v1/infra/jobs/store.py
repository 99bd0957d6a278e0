"""
Durable job store backed by SQLAlchemy.

Claims are atomic across processes: Postgres locks the candidate row with
SELECT ... FOR UPDATE SKIP LOCKED, and every backend finishes the claim with a
compare-and-swap UPDATE whose row count decides which caller won.
"""

import json
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from meetbot.config.logging import get_logger
from meetbot.infra.database import Database
from meetbot.v1.core.exceptions import NotFoundError, StoreUnavailableError, ValidationError
from meetbot.v1.infra.jobs.backoff import RetryPolicies
from meetbot.v1.infra.jobs.models import (
    CLAIMABLE_STATUSES,
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    WAITING_STATUSES,
    Job,
    JobStatus,
    JobType,
    utcnow,
)
from meetbot.v1.infra.jobs.schemas import (
    EnqueueOptions,
    JobEnqueueResponse,
    JobRecord,
    RetryDecision,
)

logger = get_logger(__name__)

# Lost compare-and-swap races tolerated before claim_next gives up for this poll
CLAIM_RACE_RETRIES = 3

MAX_ERROR_LENGTH = 4000


class JobStore:
    """Persistence and state transitions for jobs."""

    def __init__(
        self,
        database: Database,
        policies: RetryPolicies | None = None,
        job_types: set[str] | None = None,
        lease_s: float = 60.0,
    ):
        self.database = database
        self.policies = policies or RetryPolicies()
        self.job_types = set(job_types or {t.value for t in JobType})
        self.lease_s = lease_s

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.database.SessionLocal() as session:
                try:
                    yield session
                except Exception:
                    await session.rollback()
                    raise
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailableError(
                "Job store unavailable", details={"error": str(e)}
            ) from e

    # ---------- Enqueue ----------

    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Any = None,
        options: EnqueueOptions | None = None,
    ) -> JobEnqueueResponse:
        """Persist a new job, or return the live job sharing its dedupe key."""
        options = options or EnqueueOptions()
        self._validate(queue_name, job_type, payload, options)

        if options.dedupe_key:
            existing = await self.find_active_by_dedupe_key(options.dedupe_key)
            if existing:
                logger.info(
                    "Job deduplicated",
                    job_id=str(existing.id),
                    dedupe_key=options.dedupe_key,
                    job_type=job_type,
                )
                return JobEnqueueResponse(
                    job_id=existing.id, status=existing.status, deduplicated=True
                )

        now = utcnow()
        delayed = options.delay_ms > 0
        job = Job(
            id=uuid4(),
            queue=queue_name,
            type=job_type,
            payload=payload,
            status=JobStatus.DELAYED.value if delayed else JobStatus.PENDING.value,
            attempts=0,
            max_attempts=options.max_attempts
            or self.policies.for_type(job_type).max_attempts,
            available_at=now + timedelta(milliseconds=options.delay_ms),
            dedupe_key=options.dedupe_key,
            created_at=now,
            updated_at=now,
        )

        try:
            async with self._session() as session:
                session.add(job)
                await session.commit()
        except IntegrityError:
            # Another producer inserted a live job with the same dedupe key
            if options.dedupe_key:
                existing = await self.find_active_by_dedupe_key(options.dedupe_key)
                if existing:
                    return JobEnqueueResponse(
                        job_id=existing.id, status=existing.status, deduplicated=True
                    )
            raise

        return JobEnqueueResponse(job_id=job.id, status=JobStatus(job.status))

    def _validate(
        self, queue_name: str, job_type: str, payload: Any, options: EnqueueOptions
    ) -> None:
        if not queue_name or not queue_name.strip():
            raise ValidationError("Queue name cannot be empty")
        if job_type not in self.job_types:
            raise ValidationError(
                f"Unknown job type: {job_type}",
                details={"known_types": sorted(self.job_types)},
            )
        try:
            json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                "Payload is not JSON serializable", details={"error": str(e)}
            ) from e
        if options.delay_ms < 0:
            raise ValidationError("delay_ms must be >= 0")
        if options.max_attempts is not None and options.max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1")

    # ---------- Claim / heartbeat ----------

    async def claim_next(
        self,
        queue_name: str,
        worker_id: str,
        job_types: list[str] | None = None,
        lease_s: float | None = None,
    ) -> JobRecord | None:
        """
        Atomically claim the oldest eligible job of a queue.

        Only jobs whose type is in job_types are considered when it is given;
        an empty list claims nothing.
        """
        if job_types is not None and not job_types:
            return None

        lease = timedelta(seconds=lease_s or self.lease_s)

        for _ in range(CLAIM_RACE_RETRIES):
            now = utcnow()
            candidate = (
                select(Job.id)
                .where(
                    and_(
                        Job.queue == queue_name,
                        Job.status.in_(CLAIMABLE_STATUSES),
                        Job.available_at <= now,
                    )
                )
                .order_by(Job.available_at, Job.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            if job_types is not None:
                candidate = candidate.where(Job.type.in_(job_types))

            async with self._session() as session:
                job_id = (await session.execute(candidate)).scalar_one_or_none()
                if job_id is None:
                    await session.rollback()
                    return None

                claimed = await session.execute(
                    update(Job)
                    .where(
                        and_(
                            Job.id == job_id,
                            Job.status.in_(CLAIMABLE_STATUSES),
                            Job.available_at <= now,
                        )
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        locked_by=worker_id,
                        locked_at=now,
                        lease_expires_at=now + lease,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    await session.rollback()
                    continue

                await session.commit()
                job = await session.get(Job, job_id, populate_existing=True)
                return JobRecord.model_validate(job)

        return None

    async def heartbeat(
        self, job_id: UUID, worker_id: str, lease_s: float | None = None
    ) -> bool:
        """Extend the lease of a claim the worker still holds."""
        now = utcnow()
        async with self._session() as session:
            result = await session.execute(
                update(Job)
                .where(
                    and_(
                        Job.id == job_id,
                        Job.status == JobStatus.ACTIVE.value,
                        Job.locked_by == worker_id,
                    )
                )
                .values(
                    lease_expires_at=now + timedelta(seconds=lease_s or self.lease_s),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    # ---------- Outcomes ----------

    async def mark_completed(
        self,
        job_id: UUID,
        worker_id: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """
        Transition active -> completed.

        Idempotent for jobs already completed. Returns False when the caller's
        claim is stale (lease expired and the job moved on).
        """
        now = utcnow()
        conditions = [Job.id == job_id, Job.status == JobStatus.ACTIVE.value]
        if worker_id is not None:
            conditions.append(Job.locked_by == worker_id)

        async with self._session() as session:
            updated = await session.execute(
                update(Job)
                .where(and_(*conditions))
                .values(
                    status=JobStatus.COMPLETED.value,
                    result=result,
                    last_error=None,
                    locked_by=None,
                    locked_at=None,
                    lease_expires_at=None,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 1:
                await session.commit()
                return True

            current = await session.get(Job, job_id)
            if current is None:
                raise NotFoundError(f"Job {job_id} not found")
            if current.status == JobStatus.COMPLETED.value:
                return True

        logger.warning(
            "Stale completion ignored",
            job_id=str(job_id),
            worker_id=worker_id,
            status=current.status,
        )
        return False

    async def mark_failed(
        self,
        job_id: UUID,
        error: str,
        worker_id: str | None = None,
    ) -> RetryDecision | None:
        """
        Record a failed attempt and decide between retry and terminal failure.

        Returns None when the caller's claim is stale.
        """
        async with self._session() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            if job.status != JobStatus.ACTIVE.value or (
                worker_id is not None and job.locked_by != worker_id
            ):
                logger.warning(
                    "Stale failure report ignored",
                    job_id=str(job_id),
                    worker_id=worker_id,
                    status=job.status,
                )
                return None

            return await self._record_failure(session, job, error)

    async def _record_failure(
        self,
        session: AsyncSession,
        job: Job,
        error: str,
        extra_conditions: list | None = None,
    ) -> RetryDecision | None:
        now = utcnow()
        error = (error or "Unknown error")[:MAX_ERROR_LENGTH]
        attempts = job.attempts + 1
        policy = self.policies.for_type(job.type)

        values: dict[str, Any] = {
            "attempts": attempts,
            "last_error": error,
            "locked_by": None,
            "locked_at": None,
            "lease_expires_at": None,
            "updated_at": now,
        }
        delay_ms = None
        available_at = None
        if attempts < job.max_attempts:
            delay_ms = policy.next_delay(attempts)
            available_at = now + timedelta(milliseconds=delay_ms)
            values.update(
                status=JobStatus.RETRY_SCHEDULED.value, available_at=available_at
            )
        else:
            values.update(status=JobStatus.FAILED.value)

        # Compare-and-swap on the claim we read
        conditions = [
            Job.id == job.id,
            Job.status == JobStatus.ACTIVE.value,
            Job.attempts == job.attempts,
        ]
        if job.locked_by is not None:
            conditions.append(Job.locked_by == job.locked_by)
        conditions.extend(extra_conditions or [])

        updated = await session.execute(
            update(Job)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount != 1:
            await session.rollback()
            return None
        await session.commit()

        return RetryDecision(
            job_id=job.id,
            queue=job.queue,
            type=job.type,
            status=JobStatus(values["status"]),
            attempts=attempts,
            max_attempts=job.max_attempts,
            error=error,
            delay_ms=delay_ms,
            available_at=available_at,
        )

    async def recover_expired_leases(
        self,
        queue_name: str | None = None,
        now: datetime | None = None,
        limit: int = 100,
    ) -> list[RetryDecision]:
        """Fail active jobs whose lease expired without a heartbeat."""
        now = now or utcnow()
        query = (
            select(Job)
            .where(
                and_(
                    Job.status == JobStatus.ACTIVE.value,
                    Job.lease_expires_at < now,
                )
            )
            .order_by(Job.lease_expires_at)
            .limit(limit)
        )
        if queue_name:
            query = query.where(Job.queue == queue_name)
        async with self._session() as session:
            expired = (await session.execute(query)).scalars().all()

        decisions = []
        for job in expired:
            async with self._session() as session:
                decision = await self._record_failure(
                    session,
                    job,
                    f"Lease expired at {job.lease_expires_at.isoformat()} "
                    f"(held by {job.locked_by})",
                    extra_conditions=[Job.lease_expires_at < now],
                )
            if decision is not None:
                decisions.append(decision)

        if decisions:
            logger.warning(
                "Recovered jobs with expired leases",
                job_count=len(decisions),
                job_ids=[str(d.job_id) for d in decisions],
            )
        return decisions

    # ---------- Queries ----------

    async def get(self, job_id: UUID) -> JobRecord:
        async with self._session() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found", details={"job_id": str(job_id)})
            return JobRecord.model_validate(job)

    async def size(self, queue_name: str) -> int:
        """Jobs waiting to run: pending, delayed and retry-scheduled."""
        async with self._session() as session:
            result = await session.execute(
                select(func.count(Job.id)).where(
                    and_(Job.queue == queue_name, Job.status.in_(WAITING_STATUSES))
                )
            )
            return result.scalar() or 0

    async def count_by_status(self, queue_name: str | None = None) -> dict[str, int]:
        query = select(Job.status, func.count(Job.id)).group_by(Job.status)
        if queue_name:
            query = query.where(Job.queue == queue_name)
        async with self._session() as session:
            result = await session.execute(query)
            counts = {status.value: 0 for status in JobStatus}
            counts.update({status: count for status, count in result.all()})
            return counts

    async def active_worker_count(self, queue_name: str | None = None) -> int:
        """Distinct worker slots holding a live lease."""
        query = select(func.count(func.distinct(Job.locked_by))).where(
            and_(
                Job.status == JobStatus.ACTIVE.value,
                Job.lease_expires_at >= utcnow(),
            )
        )
        if queue_name:
            query = query.where(Job.queue == queue_name)
        async with self._session() as session:
            result = await session.execute(query)
            return result.scalar() or 0

    async def find_active_by_dedupe_key(self, dedupe_key: str) -> JobRecord | None:
        """Find the live (non-terminal) job holding a dedupe key."""
        async with self._session() as session:
            result = await session.execute(
                select(Job)
                .where(and_(Job.dedupe_key == dedupe_key, Job.status.in_(LIVE_STATUSES)))
                .limit(1)
            )
            job = result.scalar_one_or_none()
            return JobRecord.model_validate(job) if job else None

    async def last_enqueued_at(self, dedupe_key: str) -> datetime | None:
        async with self._session() as session:
            result = await session.execute(
                select(func.max(Job.created_at)).where(Job.dedupe_key == dedupe_key)
            )
            return result.scalar()

    # ---------- Maintenance ----------

    async def retry_failed(self, job_id: UUID) -> bool:
        """
        Re-queue a terminally failed job with a fresh attempt budget.

        Returns False when the job is not failed, or when a live job already
        holds its dedupe key.
        """
        now = utcnow()
        try:
            async with self._session() as session:
                result = await session.execute(
                    update(Job)
                    .where(and_(Job.id == job_id, Job.status == JobStatus.FAILED.value))
                    .values(
                        status=JobStatus.PENDING.value,
                        attempts=0,
                        last_error=None,
                        available_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except IntegrityError:
            logger.warning(
                "Retry blocked by live job holding the dedupe key", job_id=str(job_id)
            )
            return False

        success = result.rowcount == 1
        if success:
            logger.info("Job re-queued", job_id=str(job_id))
        return success

    async def purge_finished(self, older_than: timedelta) -> int:
        """Delete completed and failed jobs last updated before the cutoff."""
        cutoff = utcnow() - older_than
        async with self._session() as session:
            result = await session.execute(
                delete(Job).where(
                    and_(Job.status.in_(TERMINAL_STATUSES), Job.updated_at < cutoff)
                )
            )
            await session.commit()

        deleted_count = result.rowcount or 0
        if deleted_count:
            logger.info(
                "Purged finished jobs",
                deleted_count=deleted_count,
                cutoff=cutoff.isoformat(),
            )
        return deleted_count

    async def ping(self) -> float:
        """Round-trip a trivial query; returns latency in milliseconds."""
        started = time.perf_counter()
        async with self._session() as session:
            await session.execute(text("SELECT 1"))
        return (time.perf_counter() - started) * 1000
