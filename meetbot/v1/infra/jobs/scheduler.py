"""
Cron-style scheduler that enqueues maintenance jobs at due boundaries.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from apscheduler.triggers.cron import CronTrigger

from meetbot.config.logging import get_logger
from meetbot.v1.core.exceptions import ConfigurationError
from meetbot.v1.infra.jobs.models import utcnow
from meetbot.v1.infra.jobs.queue import Queue
from meetbot.v1.infra.jobs.schemas import EnqueueOptions

logger = get_logger(__name__)


@dataclass
class ScheduleEntry:
    """A cron expression bound to the job it produces."""

    name: str
    cron: str
    job_type: str
    payload: Any = None
    payload_factory: Callable[[datetime], Any] | None = None
    dedupe_key: str | None = None
    queue_name: str | None = None
    catch_up: bool = False
    trigger: CronTrigger = field(init=False, repr=False)
    next_fire_at: datetime | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        try:
            self.trigger = CronTrigger.from_crontab(self.cron, timezone=UTC)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid cron expression for schedule '{self.name}': {self.cron}",
                details={"error": str(e)},
            ) from e
        if self.dedupe_key is None:
            self.dedupe_key = f"cron:{self.name}"

    def next_after(self, moment: datetime) -> datetime | None:
        """First boundary strictly after `moment`."""
        return self.trigger.get_next_fire_time(moment, moment)

    def build_payload(self, boundary: datetime) -> Any:
        if self.payload_factory is not None:
            return self.payload_factory(boundary)
        return self.payload


class CronScheduler:
    """
    Evaluates schedule entries and enqueues due jobs.

    A live job holding the entry's dedupe key suppresses the fire, so a run
    that is still pending or active is never duplicated. Boundaries missed
    while the process was down are skipped unless the entry opts into
    catch-up, which fires once at start.
    """

    def __init__(
        self,
        queues: dict[str, Queue] | Queue,
        tick_s: float = 30.0,
        catch_up: bool = False,
    ):
        if isinstance(queues, Queue):
            queues = {queues.name: queues}
        self.queues = queues
        self.default_queue = next(iter(queues.values()))
        self.tick_s = tick_s
        self.catch_up = catch_up
        self.entries: dict[str, ScheduleEntry] = {}
        self.running = False
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    def add(self, entry: ScheduleEntry, now: datetime | None = None) -> ScheduleEntry:
        if entry.name in self.entries:
            raise ConfigurationError(f"Schedule '{entry.name}' already exists")
        if entry.queue_name and entry.queue_name not in self.queues:
            raise ConfigurationError(
                f"Schedule '{entry.name}' targets unknown queue '{entry.queue_name}'"
            )
        entry.next_fire_at = entry.next_after(now or utcnow())
        self.entries[entry.name] = entry
        logger.info(
            "Schedule registered",
            schedule=entry.name,
            cron=entry.cron,
            job_type=entry.job_type,
            next_fire_at=entry.next_fire_at.isoformat() if entry.next_fire_at else None,
        )
        return entry

    def _queue_for(self, entry: ScheduleEntry) -> Queue:
        return self.queues[entry.queue_name] if entry.queue_name else self.default_queue

    async def fire(self, entry: ScheduleEntry, boundary: datetime) -> bool:
        """Enqueue the entry's job for a boundary unless a live run exists."""
        queue = self._queue_for(entry)
        existing = await queue.store.find_active_by_dedupe_key(entry.dedupe_key)
        if existing is not None:
            logger.info(
                "Skipping scheduled job, previous run still live",
                schedule=entry.name,
                boundary=boundary.isoformat(),
                job_id=str(existing.id),
                status=existing.status.value,
            )
            return False

        response = await queue.submit(
            entry.job_type,
            entry.build_payload(boundary),
            EnqueueOptions(dedupe_key=entry.dedupe_key),
        )
        if response.deduplicated:
            return False

        logger.info(
            "Scheduled job enqueued",
            schedule=entry.name,
            boundary=boundary.isoformat(),
            job_id=str(response.job_id),
        )
        return True

    async def tick(self, now: datetime | None = None) -> int:
        """Fire every entry whose boundary has passed. Returns jobs enqueued."""
        now = now or utcnow()
        enqueued = 0
        for entry in list(self.entries.values()):
            if entry.next_fire_at is None or entry.next_fire_at > now:
                continue
            boundary = entry.next_fire_at
            # Advance first so a failing enqueue cannot re-fire the same boundary
            entry.next_fire_at = entry.next_after(now)
            try:
                if await self.fire(entry, boundary):
                    enqueued += 1
            except Exception:
                logger.exception(
                    "Scheduled enqueue failed",
                    schedule=entry.name,
                    boundary=boundary.isoformat(),
                )
        return enqueued

    async def catch_up_missed(self, now: datetime | None = None) -> int:
        """Fire once for entries whose boundary passed since their last enqueue."""
        now = now or utcnow()
        fired = 0
        for entry in list(self.entries.values()):
            if not (entry.catch_up or self.catch_up):
                continue
            queue = self._queue_for(entry)
            last = await queue.store.last_enqueued_at(entry.dedupe_key)
            if last is None:
                continue
            missed = entry.next_after(last)
            if missed is not None and missed <= now:
                logger.info(
                    "Catching up missed schedule",
                    schedule=entry.name,
                    missed_boundary=missed.isoformat(),
                )
                if await self.fire(entry, missed):
                    fired += 1
        return fired

    async def start(self) -> None:
        if self.running:
            raise RuntimeError("Scheduler is already running")
        self.running = True
        self._stopping.clear()
        await self.catch_up_missed()
        self._task = asyncio.create_task(self._run())
        logger.info("Scheduler started", schedules=list(self.entries), tick_s=self.tick_s)

    async def stop(self) -> None:
        if not self.running:
            return
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        self.running = False
        logger.info("Scheduler stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Error running scheduler tick")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_s)
            except TimeoutError:
                pass
