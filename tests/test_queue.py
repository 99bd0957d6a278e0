import pytest

from meetbot.v1.infra.jobs.models import JobStatus
from meetbot.v1.infra.jobs.schemas import JobEventType


@pytest.mark.asyncio
async def test_enqueue_publishes_event(queue, store, recorded_events):
    job_id = await queue.enqueue("process-recording", {"recording_id": "r1"})

    job = await store.get(job_id)
    assert job.queue == queue.name
    assert job.status == JobStatus.PENDING

    assert len(recorded_events) == 1
    event = recorded_events[0]
    assert event.event == JobEventType.ENQUEUED
    assert event.job_id == job_id
    assert event.queue == queue.name
    assert event.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_enqueue_delayed(queue, store):
    job_id = await queue.enqueue_delayed("generate-summary", {"meeting": "m1"}, 60_000)

    job = await store.get(job_id)
    assert job.status == JobStatus.DELAYED
    assert await queue.size() == 1


@pytest.mark.asyncio
async def test_deduplicated_enqueue_publishes_nothing(queue, recorded_events):
    first = await queue.enqueue("transcribe-audio", {}, dedupe_key="audio-1")
    second = await queue.enqueue("transcribe-audio", {}, dedupe_key="audio-1")

    assert first == second
    assert [e.event for e in recorded_events] == [JobEventType.ENQUEUED]


@pytest.mark.asyncio
async def test_size_counts_waiting_jobs(queue, store):
    assert await queue.size() == 0

    await queue.enqueue("process-recording", {})
    await queue.enqueue("process-recording", {})
    await store.claim_next(queue.name, "w1")

    assert await queue.size() == 1


@pytest.mark.asyncio
async def test_queues_are_isolated(jobs):
    uploads = jobs.queue("uploads")
    await uploads.enqueue("process-recording", {})

    assert await uploads.size() == 1
    assert await jobs.default_queue.size() == 0
    assert jobs.queue("uploads") is uploads
