from datetime import UTC, datetime, timedelta

import pytest

from meetbot.v1.core.exceptions import ConfigurationError
from meetbot.v1.infra.jobs.models import JobStatus, utcnow
from meetbot.v1.infra.jobs.scheduler import CronScheduler, ScheduleEntry

BASE = datetime(2026, 1, 1, 0, 0, tzinfo=UTC)
FIVE_MINUTES = timedelta(minutes=5)


def cleanup_entry(**kwargs) -> ScheduleEntry:
    options = {
        "name": "cleanup",
        "cron": "*/5 * * * *",
        "job_type": "cleanup-old-files",
        "payload": {"retention_days": 30},
    }
    options.update(kwargs)
    return ScheduleEntry(**options)


async def total_jobs(store) -> int:
    return sum((await store.count_by_status()).values())


class TestScheduleEntry:
    def test_next_boundary_is_strictly_after(self):
        entry = cleanup_entry()

        assert entry.next_after(BASE) == BASE + FIVE_MINUTES
        assert entry.next_after(BASE + timedelta(minutes=3)) == BASE + FIVE_MINUTES

    def test_default_dedupe_key(self):
        assert cleanup_entry().dedupe_key == "cron:cleanup"
        assert cleanup_entry(dedupe_key="custom").dedupe_key == "custom"

    def test_invalid_cron_rejected(self):
        with pytest.raises(ConfigurationError):
            cleanup_entry(cron="not a cron")

    def test_payload_factory(self):
        entry = cleanup_entry(payload_factory=lambda boundary: {"at": boundary.isoformat()})
        assert entry.build_payload(BASE) == {"at": BASE.isoformat()}


class TestTick:
    @pytest.mark.asyncio
    async def test_fires_when_due(self, queue, store):
        scheduler = CronScheduler(queue)
        entry = scheduler.add(cleanup_entry(), now=BASE)
        assert entry.next_fire_at == BASE + FIVE_MINUTES

        assert await scheduler.tick(BASE + timedelta(minutes=4)) == 0
        assert await scheduler.tick(BASE + FIVE_MINUTES) == 1
        assert entry.next_fire_at == BASE + 2 * FIVE_MINUTES

        job = await store.find_active_by_dedupe_key("cron:cleanup")
        assert job.type == "cleanup-old-files"
        assert job.payload == {"retention_days": 30}

    @pytest.mark.asyncio
    async def test_no_duplicate_while_previous_run_active(self, queue, store):
        scheduler = CronScheduler(queue)
        entry = scheduler.add(cleanup_entry(), now=BASE)

        assert await scheduler.tick(BASE + FIVE_MINUTES) == 1
        claimed = await store.claim_next(queue.name, "w1")
        assert claimed.status == JobStatus.ACTIVE

        # Same boundary twice, then the next one, all while the job is active
        assert await scheduler.fire(entry, BASE + FIVE_MINUTES) is False
        assert await scheduler.fire(entry, BASE + FIVE_MINUTES) is False
        assert await scheduler.tick(BASE + 2 * FIVE_MINUTES) == 0
        assert await total_jobs(store) == 1

        await store.mark_completed(claimed.id, worker_id="w1")

        assert await scheduler.tick(BASE + 3 * FIVE_MINUTES) == 1
        assert await total_jobs(store) == 2

    @pytest.mark.asyncio
    async def test_retry_scheduled_run_still_blocks(self, queue, store):
        scheduler = CronScheduler(queue)
        scheduler.add(cleanup_entry(), now=BASE)

        assert await scheduler.tick(BASE + FIVE_MINUTES) == 1
        job = await store.find_active_by_dedupe_key("cron:cleanup")
        claimed = await store.claim_next(queue.name, "w1")
        await store.mark_failed(claimed.id, "boom", worker_id="w1")

        # Retry-scheduled is still live
        assert await scheduler.tick(BASE + 2 * FIVE_MINUTES) == 0
        assert (await store.get(job.id)).status == JobStatus.RETRY_SCHEDULED

    @pytest.mark.asyncio
    async def test_missed_boundaries_are_not_backfilled(self, queue, store):
        scheduler = CronScheduler(queue)
        entry = scheduler.add(cleanup_entry(), now=BASE)

        later = BASE + timedelta(hours=1, minutes=2)
        assert await scheduler.tick(later) == 1
        assert entry.next_fire_at == BASE + timedelta(hours=1, minutes=5)
        assert await total_jobs(store) == 1

    @pytest.mark.asyncio
    async def test_failing_entry_does_not_block_others(self, queue, store):
        scheduler = CronScheduler(queue)
        broken = scheduler.add(cleanup_entry(name="broken", job_type="no-such-type"), now=BASE)
        scheduler.add(cleanup_entry(), now=BASE)

        assert await scheduler.tick(BASE + FIVE_MINUTES) == 1
        assert broken.next_fire_at == BASE + 2 * FIVE_MINUTES

    @pytest.mark.asyncio
    async def test_targets_named_queue(self, jobs, store):
        archive = jobs.queue("archive")
        scheduler = CronScheduler({"default": jobs.default_queue, "archive": archive})
        scheduler.add(cleanup_entry(queue_name="archive"), now=BASE)

        await scheduler.tick(BASE + FIVE_MINUTES)

        assert await archive.size() == 1
        assert await jobs.default_queue.size() == 0

    @pytest.mark.asyncio
    async def test_duplicate_and_unknown_queue_rejected(self, queue):
        scheduler = CronScheduler(queue)
        scheduler.add(cleanup_entry())

        with pytest.raises(ConfigurationError):
            scheduler.add(cleanup_entry())
        with pytest.raises(ConfigurationError):
            scheduler.add(cleanup_entry(name="other", queue_name="missing"))


class TestCatchUp:
    async def _complete_one_run(self, queue, store):
        scheduler = CronScheduler(queue)
        scheduler.add(cleanup_entry(), now=BASE)
        await scheduler.tick(BASE + FIVE_MINUTES)
        claimed = await store.claim_next(queue.name, "w1")
        await store.mark_completed(claimed.id, worker_id="w1")

    @pytest.mark.asyncio
    async def test_catch_up_fires_once(self, queue, store):
        await self._complete_one_run(queue, store)

        restarted = CronScheduler(queue)
        restarted.add(cleanup_entry(catch_up=True))

        much_later = utcnow() + timedelta(hours=3)
        assert await restarted.catch_up_missed(now=much_later) == 1
        assert await total_jobs(store) == 2

    @pytest.mark.asyncio
    async def test_catch_up_is_opt_in(self, queue, store):
        await self._complete_one_run(queue, store)

        restarted = CronScheduler(queue)
        restarted.add(cleanup_entry())

        assert await restarted.catch_up_missed(now=utcnow() + timedelta(hours=3)) == 0

    @pytest.mark.asyncio
    async def test_catch_up_scheduler_wide(self, queue, store):
        await self._complete_one_run(queue, store)

        restarted = CronScheduler(queue, catch_up=True)
        restarted.add(cleanup_entry())

        assert await restarted.catch_up_missed(now=utcnow() + timedelta(hours=3)) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_catch_up_without_history(self, queue, store):
        scheduler = CronScheduler(queue)
        scheduler.add(cleanup_entry(catch_up=True))

        assert await scheduler.catch_up_missed(now=utcnow() + timedelta(hours=3)) == 0


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_start_ticks_until_stopped(self, queue, store, wait_for):
        scheduler = CronScheduler(queue, tick_s=0.05)
        scheduler.add(cleanup_entry(), now=BASE)

        await scheduler.start()
        try:
            async def enqueued():
                return await store.find_active_by_dedupe_key("cron:cleanup")

            await wait_for(enqueued)
        finally:
            await scheduler.stop()

        assert scheduler.running is False
        assert await total_jobs(store) == 1

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, queue):
        scheduler = CronScheduler(queue, tick_s=0.05)
        await scheduler.start()
        try:
            with pytest.raises(RuntimeError):
                await scheduler.start()
        finally:
            await scheduler.stop()
