"""
Job service for enqueueing and inspecting background jobs.
"""

from collections.abc import Callable
from typing import Any
from uuid import UUID

from meetbot.config.logging import get_logger
from meetbot.v1.infra.jobs.models import JobStatus
from meetbot.v1.infra.jobs.queue import Queue
from meetbot.v1.infra.jobs.schemas import (
    EnqueueOptions,
    JobEnqueueResponse,
    JobRecord,
    JobStatsResponse,
)
from meetbot.v1.infra.jobs.store import JobStore

logger = get_logger(__name__)


class JobService:
    """Producer and introspection API over the job store."""

    def __init__(
        self,
        store: JobStore,
        queue_factory: Callable[[str], Queue],
        default_queue: str,
        active_workers: Callable[[], int] | None = None,
    ):
        self.store = store
        self.queue_factory = queue_factory
        self.default_queue = default_queue
        self._active_workers = active_workers

    async def submit(
        self,
        queue_name: str | None,
        job_type: str,
        payload: Any = None,
        options: EnqueueOptions | None = None,
    ) -> JobEnqueueResponse:
        """
        Enqueue a job with deduplication support.

        Args:
            queue_name: Target queue; the default queue when None
            job_type: Registered job type
            payload: JSON-serializable payload
            options: Delay, attempt ceiling and dedupe key

        Returns:
            Job enqueue response with job_id and deduplication info
        """
        queue = self.queue_factory(queue_name or self.default_queue)
        response = await queue.submit(job_type, payload, options)

        logger.info(
            "Job enqueued",
            job_id=str(response.job_id),
            queue=queue.name,
            job_type=job_type,
            status=response.status.value,
            deduplicated=response.deduplicated,
        )
        return response

    async def enqueue(
        self,
        queue_name: str | None,
        job_type: str,
        payload: Any = None,
        options: EnqueueOptions | None = None,
    ) -> UUID:
        response = await self.submit(queue_name, job_type, payload, options)
        return response.job_id

    async def get_job(self, job_id: UUID) -> JobRecord:
        return await self.store.get(job_id)

    async def queue_depth(self, queue_name: str | None = None) -> int:
        """Jobs waiting to run in a queue."""
        return await self.store.size(queue_name or self.default_queue)

    def active_worker_count(self) -> int:
        """Slots executing a handler in this process."""
        return self._active_workers() if self._active_workers else 0

    async def get_job_stats(self, queue_name: str | None = None) -> JobStatsResponse:
        """Status counts for one queue, or across queues when queue_name is None."""
        by_status = await self.store.count_by_status(queue_name)
        queue_depth = sum(
            by_status[status.value]
            for status in (JobStatus.PENDING, JobStatus.DELAYED, JobStatus.RETRY_SCHEDULED)
        )
        active_workers = await self.store.active_worker_count(queue_name)

        return JobStatsResponse(
            queue=queue_name,
            by_status=by_status,
            queue_depth=queue_depth,
            active_jobs=by_status[JobStatus.ACTIVE.value],
            active_workers=active_workers,
        )

    async def retry_job(self, job_id: UUID) -> bool:
        """Re-queue a failed job. False when it is not in the failed state."""
        await self.store.get(job_id)
        return await self.store.retry_failed(job_id)
