"""
Bounded asyncio worker pool with leases, heartbeats and graceful shutdown.
"""

import asyncio
import json
import os
import socket
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from uuid import UUID

from meetbot.config.logging import get_logger
from meetbot.config.settings import Settings
from meetbot.v1.core.exceptions import (
    ConfigurationError,
    HandlerError,
    JobTimeoutError,
    StoreUnavailableError,
)
from meetbot.v1.core.registries import JobRegistry
from meetbot.v1.infra.jobs.events import EventBus
from meetbot.v1.infra.jobs.models import JobStatus, utcnow
from meetbot.v1.infra.jobs.queue import Queue
from meetbot.v1.infra.jobs.schemas import (
    JobEvent,
    JobEventType,
    JobRecord,
    RetryDecision,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Attempts at persisting a job outcome before leaving it to lease recovery
REPORT_ATTEMPTS = 3


class WorkerPool:
    """
    Runs `concurrency` execution slots against one queue.

    Features:
    - Atomic claims through the job store, filtered to registered job types
    - Wake-on-enqueue with a bounded poll interval fallback
    - Handler timeout, failures routed through the retry policy
    - Lease heartbeats and recovery of expired leases
    - Graceful shutdown with a grace period for in-flight handlers
    """

    def __init__(
        self,
        queue: Queue,
        registry: JobRegistry,
        settings: Settings,
        events: EventBus | None = None,
        concurrency: int | None = None,
        worker_id: str | None = None,
    ):
        self.queue = queue
        self.store = queue.store
        self.registry = registry
        self.settings = settings
        self.events = events
        self.concurrency = concurrency or settings.queue_concurrency
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{id(self)}"

        self.lease_s = settings.job_lease_duration_s
        self.handler_timeout_s = settings.job_timeout_s
        self.poll_interval_s = settings.job_poll_interval_ms / 1000

        self.running = False
        self.active_jobs: dict[UUID, str] = {}
        self._stopping = asyncio.Event()
        self._wakeup = asyncio.Event()
        self._slots: list[asyncio.Task] = []
        self._background: list[asyncio.Task] = []
        self._unsubscribe: Callable[[], None] | None = None

    # ---------- Registration / lifecycle ----------

    def register_handler(self, job_type: str, handler: Any) -> None:
        """Register the handler for a job type; must precede claims of that type."""
        self.registry.register(job_type, handler)
        self._wakeup.set()

    def validate_handlers(self) -> None:
        """Fail fast for required types without a handler; warn for the rest."""
        missing_required = [
            job_type
            for job_type in self.settings.required_job_types
            if job_type not in self.registry
        ]
        if missing_required:
            raise ConfigurationError(
                "No handler registered for required job types",
                details={"job_types": missing_required},
            )

        for job_type in sorted(self.store.job_types):
            if job_type not in self.registry:
                logger.warning(
                    "No handler registered; jobs of this type stay pending",
                    job_type=job_type,
                    queue=self.queue.name,
                )
        for job_type in self.registry.list():
            if job_type not in self.store.job_types:
                logger.warning(
                    "Handler registered for a job type the store rejects",
                    job_type=job_type,
                )

    async def start(self) -> None:
        """Validate handlers and spawn slot and maintenance tasks."""
        if self.running:
            raise RuntimeError("Worker pool is already running")

        self.validate_handlers()
        self.running = True
        self._stopping.clear()

        if self.events is not None:
            self._unsubscribe = self.events.subscribe(
                self._on_enqueued, events=[JobEventType.ENQUEUED]
            )

        self._slots = [
            asyncio.create_task(self._slot_loop(slot), name=f"{self.worker_id}:{slot}")
            for slot in range(self.concurrency)
        ]
        self._background = [
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._lease_recovery_loop()),
        ]

        logger.info(
            "Worker pool started",
            worker_id=self.worker_id,
            queue=self.queue.name,
            concurrency=self.concurrency,
            poll_interval_ms=self.settings.job_poll_interval_ms,
            job_types=self.registry.list(),
        )

    async def stop(self, grace_s: float | None = None) -> None:
        """
        Stop claiming immediately and give in-flight handlers a grace period.

        Handlers still running afterwards are cancelled and their jobs stay
        active; the lease expires and a later process retries them.
        """
        if not self.running:
            return

        grace = self.settings.job_shutdown_grace_s if grace_s is None else grace_s
        logger.info(
            "Stopping worker pool",
            worker_id=self.worker_id,
            active_jobs=len(self.active_jobs),
            grace_s=grace,
        )
        self._stopping.set()
        self._wakeup.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        pending: set[asyncio.Task] = set()
        if self._slots:
            _, pending = await asyncio.wait(self._slots, timeout=grace)
        if pending:
            logger.warning(
                "Worker pool stopped with active jobs",
                worker_id=self.worker_id,
                active_jobs=[str(job_id) for job_id in self.active_jobs],
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

        self._slots = []
        self._background = []
        self.running = False
        logger.info("Worker pool stopped", worker_id=self.worker_id)

    def active_worker_count(self) -> int:
        """Slots currently executing a handler."""
        return len(self.active_jobs)

    # ---------- Slots ----------

    async def _slot_loop(self, slot: int) -> None:
        slot_id = f"{self.worker_id}:{slot}"
        store_failures = 0

        while not self._stopping.is_set():
            try:
                job = await self.store.claim_next(
                    self.queue.name,
                    slot_id,
                    job_types=self.registry.list(),
                    lease_s=self.lease_s,
                )
                store_failures = 0
            except StoreUnavailableError as e:
                store_failures += 1
                delay = self._store_backoff(store_failures)
                logger.warning(
                    "Job store unavailable, backing off",
                    slot_id=slot_id,
                    error=e.details.get("error", e.message),
                    retry_in_s=delay,
                )
                await self._pause(delay)
                continue
            except Exception:
                logger.exception("Error claiming job", slot_id=slot_id)
                await self._pause(self.poll_interval_s)
                continue

            if job is None:
                await self._wait_for_work()
                continue

            try:
                await self._execute(job, slot_id)
            except Exception:
                # The job stays active; lease recovery retries it
                logger.exception(
                    "Error executing job",
                    job_id=str(job.id),
                    job_type=job.type,
                    slot_id=slot_id,
                )

    async def _execute(self, job: JobRecord, slot_id: str) -> None:
        self.active_jobs[job.id] = slot_id
        await self._publish(JobEventType.STARTED, job, JobStatus.ACTIVE)

        try:
            handler = self.registry.resolve(job.type)
            deadline = asyncio.timeout(self.handler_timeout_s)
            try:
                async with deadline:
                    result = await handler(job)
            except TimeoutError as e:
                if not deadline.expired():
                    raise
                raise JobTimeoutError(
                    f"Handler for {job.type} exceeded {self.handler_timeout_s}s",
                    details={"job_id": str(job.id)},
                ) from e
        except asyncio.CancelledError:
            logger.warning(
                "Job execution cancelled; lease left to expire",
                job_id=str(job.id),
                job_type=job.type,
                slot_id=slot_id,
            )
            raise
        except Exception as e:
            await self._report_failure(job, slot_id, e)
        else:
            await self._report_success(job, slot_id, result)
        finally:
            self.active_jobs.pop(job.id, None)

    async def _report_success(self, job: JobRecord, slot_id: str, result: Any) -> None:
        stored = result if isinstance(result, dict) else None
        if stored is not None:
            try:
                json.dumps(stored, allow_nan=False)
            except (TypeError, ValueError) as e:
                await self._report_failure(
                    job,
                    slot_id,
                    HandlerError(f"Handler result is not JSON serializable: {e}"),
                )
                return

        completed = await self._persist(
            lambda: self.store.mark_completed(job.id, worker_id=slot_id, result=stored),
            job,
        )
        if completed:
            await self._publish(JobEventType.COMPLETED, job, JobStatus.COMPLETED)

    async def _report_failure(self, job: JobRecord, slot_id: str, exc: Exception) -> None:
        error = f"{exc.__class__.__name__}: {exc}"
        logger.warning(
            "Job attempt failed",
            job_id=str(job.id),
            job_type=job.type,
            slot_id=slot_id,
            error=error,
        )
        decision = await self._persist(
            lambda: self.store.mark_failed(job.id, error, worker_id=slot_id), job
        )
        if decision is not None:
            await self.publish_decision(decision)

    async def _persist(self, operation: Callable[[], Awaitable[T]], job: JobRecord) -> T | None:
        """Write a job outcome, retrying while the store is unreachable."""
        for attempt in range(1, REPORT_ATTEMPTS + 1):
            try:
                return await operation()
            except StoreUnavailableError:
                if attempt == REPORT_ATTEMPTS:
                    logger.exception(
                        "Could not record job outcome; lease recovery will retry it",
                        job_id=str(job.id),
                    )
                    return None
                await asyncio.sleep(self._store_backoff(attempt))
        return None

    async def publish_decision(self, decision: RetryDecision) -> None:
        if self.events is None:
            return
        await self.events.publish(
            JobEvent(
                event=JobEventType.RETRIED if decision.will_retry else JobEventType.FAILED,
                job_id=decision.job_id,
                type=decision.type,
                status=decision.status,
                queue=decision.queue,
                attempts=decision.attempts,
                timestamp=utcnow(),
                error=decision.error,
            )
        )

    async def _publish(
        self, event: JobEventType, job: JobRecord, status: JobStatus
    ) -> None:
        if self.events is None:
            return
        await self.events.publish(
            JobEvent(
                event=event,
                job_id=job.id,
                type=job.type,
                status=status,
                queue=job.queue,
                attempts=job.attempts,
                timestamp=utcnow(),
            )
        )

    # ---------- Waiting ----------

    def _on_enqueued(self, event: JobEvent) -> None:
        if event.queue == self.queue.name:
            self._wakeup.set()

    async def _wait_for_work(self) -> None:
        """Sleep until an enqueue wakes us or the poll interval elapses."""
        if self._stopping.is_set():
            return
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval_s)
        except TimeoutError:
            pass

    async def _pause(self, seconds: float) -> None:
        """Sleep that returns early on shutdown."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def _store_backoff(self, failures: int) -> float:
        return min(
            self.settings.store_retry_max_s,
            self.settings.store_retry_base_s * (2 ** min(failures - 1, 16)),
        )

    # ---------- Maintenance loops ----------

    async def _heartbeat_loop(self) -> None:
        """Extend leases of in-flight jobs."""
        interval = self.lease_s / 3
        while not self._stopping.is_set():
            try:
                for job_id, slot_id in list(self.active_jobs.items()):
                    alive = await self.store.heartbeat(job_id, slot_id, lease_s=self.lease_s)
                    if not alive:
                        logger.warning(
                            "Lease lost for in-flight job",
                            job_id=str(job_id),
                            slot_id=slot_id,
                        )
            except Exception:
                logger.exception("Error updating heartbeats", worker_id=self.worker_id)
            await self._pause(interval)

    async def _lease_recovery_loop(self) -> None:
        """Send jobs with expired leases through the failure path."""
        interval = max(self.lease_s / 2, self.poll_interval_s)
        while not self._stopping.is_set():
            try:
                decisions = await self.store.recover_expired_leases(self.queue.name)
                for decision in decisions:
                    await self.publish_decision(decision)
                if decisions:
                    self._wakeup.set()
            except Exception:
                logger.exception("Error in lease recovery", worker_id=self.worker_id)
            await self._pause(interval)
