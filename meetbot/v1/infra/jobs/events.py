"""
In-process event bus for job lifecycle notifications.
"""

import inspect
from collections.abc import Awaitable, Callable, Iterable
from typing import Union

from meetbot.config.logging import get_logger
from meetbot.v1.infra.jobs.schemas import JobEvent, JobEventType

logger = get_logger(__name__)

Subscriber = Callable[[JobEvent], Union[None, Awaitable[None]]]


class EventBus:
    """
    Fan-out of JobEvents to subscribers.

    Subscribers may be plain or async callables. A failing subscriber is
    logged and does not affect other subscribers or the publisher.
    """

    def __init__(self):
        self._subscribers: list[tuple[frozenset[JobEventType] | None, Subscriber]] = []

    def subscribe(
        self,
        callback: Subscriber,
        events: Iterable[JobEventType | str] | None = None,
    ) -> Callable[[], None]:
        """Subscribe to all events, or only to the given event types."""
        selected = (
            frozenset(JobEventType(event) for event in events)
            if events is not None
            else None
        )
        entry = (selected, callback)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def publish(self, event: JobEvent) -> None:
        for selected, callback in list(self._subscribers):
            if selected is not None and event.event not in selected:
                continue
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    job_event=event.event.value,
                    job_id=str(event.job_id),
                )


def log_job_event(event: JobEvent) -> None:
    """Default subscriber writing every transition to the structured log."""
    fields = {
        "job_id": str(event.job_id),
        "job_type": event.type,
        "queue": event.queue,
        "status": event.status.value,
        "attempts": event.attempts,
    }
    if event.event == JobEventType.FAILED:
        logger.error("Job failed permanently", error=event.error, **fields)
    elif event.event == JobEventType.RETRIED:
        logger.warning("Job attempt failed, retry scheduled", error=event.error, **fields)
    else:
        logger.info(f"Job {event.event.value}", **fields)
