"""
Application root wiring the job store, queues, worker pool and scheduler.
"""

from typing import Any

from meetbot.config.logging import get_logger
from meetbot.config.settings import Settings
from meetbot.infra.database import Database
from meetbot.v1.core.registries import JobRegistry
from meetbot.v1.infra.jobs.backoff import RetryPolicies
from meetbot.v1.infra.jobs.events import EventBus, log_job_event
from meetbot.v1.infra.jobs.handlers import FileSweeper
from meetbot.v1.infra.jobs.models import JobType
from meetbot.v1.infra.jobs.queue import Queue
from meetbot.v1.infra.jobs.registry_init import register_job_handlers
from meetbot.v1.infra.jobs.scheduler import CronScheduler, ScheduleEntry
from meetbot.v1.infra.jobs.service import JobService
from meetbot.v1.infra.jobs.store import JobStore
from meetbot.v1.infra.jobs.worker import WorkerPool

logger = get_logger(__name__)


class JobSystem:
    """
    Owns every job component for one process.

    Producers only need `service`; worker processes additionally call
    `start()` to run the pool and the scheduler.
    """

    def __init__(
        self,
        settings: Settings,
        database: Database | None = None,
        file_sweeper: FileSweeper | None = None,
        worker_id: str | None = None,
    ):
        self.settings = settings
        self.database = database or Database(settings)
        self.policies = RetryPolicies.from_settings(settings)
        self.store = JobStore(
            self.database,
            policies=self.policies,
            job_types={t.value for t in JobType} | set(settings.extra_job_types),
            lease_s=settings.job_lease_duration_s,
        )

        self.events = EventBus()
        self.events.subscribe(log_job_event)

        self._queues: dict[str, Queue] = {}
        self.default_queue = self.queue(settings.queue_name)

        self.registry = JobRegistry()
        register_job_handlers(self.registry, self.store, settings, file_sweeper)

        self.pool = WorkerPool(
            self.default_queue,
            self.registry,
            settings,
            events=self.events,
            worker_id=worker_id,
        )
        self.scheduler = CronScheduler(
            self._queues,
            tick_s=settings.scheduler_tick_s,
            catch_up=settings.scheduler_catch_up,
        )
        self.scheduler.add(
            ScheduleEntry(
                name=JobType.CLEANUP_OLD_FILES.value,
                cron=settings.cleanup_cron_schedule,
                job_type=JobType.CLEANUP_OLD_FILES.value,
                payload={"retention_days": settings.recording_retention_days},
            )
        )
        self.service = JobService(
            self.store,
            self.queue,
            settings.queue_name,
            active_workers=self.pool.active_worker_count,
        )

    def queue(self, name: str) -> Queue:
        """Queue handle bound to this system's store and event bus."""
        if name not in self._queues:
            self._queues[name] = Queue(name, self.store, events=self.events)
        return self._queues[name]

    def register_handler(self, job_type: str, handler: Any) -> None:
        self.pool.register_handler(job_type, handler)

    def add_schedule(self, entry: ScheduleEntry) -> ScheduleEntry:
        if entry.queue_name:
            self.queue(entry.queue_name)
        return self.scheduler.add(entry)

    async def create_schema(self) -> None:
        await self.database.create_all()

    async def start(self) -> None:
        """Start the worker pool, then the scheduler when enabled."""
        await self.pool.start()
        if self.settings.scheduler_enabled:
            await self.scheduler.start()
        logger.info(
            "Job system started",
            queue=self.default_queue.name,
            scheduler_enabled=self.settings.scheduler_enabled,
        )

    async def stop(self, grace_s: float | None = None) -> None:
        await self.scheduler.stop()
        await self.pool.stop(grace_s)
        logger.info("Job system stopped")

    async def close(self) -> None:
        await self.stop()
        await self.database.close()
