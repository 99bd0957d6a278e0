"""
Named queue: an addressing layer over the job store.
"""

from typing import Any
from uuid import UUID

from meetbot.v1.infra.jobs.events import EventBus
from meetbot.v1.infra.jobs.models import utcnow
from meetbot.v1.infra.jobs.schemas import (
    EnqueueOptions,
    JobEnqueueResponse,
    JobEvent,
    JobEventType,
)
from meetbot.v1.infra.jobs.store import JobStore


class Queue:
    """A named partition of jobs. Has no loop of its own."""

    def __init__(self, name: str, store: JobStore, events: EventBus | None = None):
        self.name = name
        self.store = store
        self.events = events

    async def submit(
        self, job_type: str, payload: Any = None, options: EnqueueOptions | None = None
    ) -> JobEnqueueResponse:
        """Enqueue and report whether an existing live job was reused."""
        response = await self.store.enqueue(self.name, job_type, payload, options)
        if not response.deduplicated and self.events is not None:
            await self.events.publish(
                JobEvent(
                    event=JobEventType.ENQUEUED,
                    job_id=response.job_id,
                    type=job_type,
                    status=response.status,
                    queue=self.name,
                    timestamp=utcnow(),
                )
            )
        return response

    async def enqueue(
        self,
        job_type: str,
        payload: Any = None,
        *,
        max_attempts: int | None = None,
        dedupe_key: str | None = None,
        delay_ms: int = 0,
    ) -> UUID:
        response = await self.submit(
            job_type,
            payload,
            EnqueueOptions(
                delay_ms=delay_ms, max_attempts=max_attempts, dedupe_key=dedupe_key
            ),
        )
        return response.job_id

    async def enqueue_delayed(
        self,
        job_type: str,
        payload: Any,
        delay_ms: int,
        *,
        max_attempts: int | None = None,
        dedupe_key: str | None = None,
    ) -> UUID:
        return await self.enqueue(
            job_type,
            payload,
            max_attempts=max_attempts,
            dedupe_key=dedupe_key,
            delay_ms=delay_ms,
        )

    async def size(self) -> int:
        """Pending + delayed + retry-scheduled jobs, for producer backpressure."""
        return await self.store.size(self.name)
