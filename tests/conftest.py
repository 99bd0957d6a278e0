import asyncio
from collections.abc import AsyncGenerator

import pytest
import structlog
from httpx import ASGITransport, AsyncClient

from meetbot.config.settings import Settings
from meetbot.infra.database import Database
from meetbot.main import create_app
from meetbot.v1.infra.jobs.runtime import JobSystem
from meetbot.v1.infra.jobs.schemas import JobEvent


@pytest.fixture(autouse=True)
def uncached_loggers():
    """Bind loggers per call so CLI runs never log into a closed stream."""
    structlog.configure(cache_logger_on_first_use=False)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture
def settings(database_url) -> Settings:
    """Settings tuned for fast tests against a throwaway SQLite file."""
    return Settings(
        database_url=database_url,
        environment="test",
        debug=False,
        log_level="WARNING",
        queue_concurrency=2,
        job_base_delay_ms=10,
        job_max_delay_ms=100,
        job_backoff_jitter=0.0,
        job_poll_interval_ms=20,
        job_lease_duration_s=30.0,
        job_timeout_s=5.0,
        job_shutdown_grace_s=2.0,
        store_retry_base_s=0.01,
        store_retry_max_s=0.05,
        scheduler_enabled=False,
        scheduler_tick_s=0.05,
        extra_job_types=["send-notification"],
    )


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    db = Database(settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
async def jobs(settings, database) -> AsyncGenerator[JobSystem, None]:
    """A fully wired job system; workers are started by the tests that need them."""
    system = JobSystem(settings, database=database, worker_id="test-worker")
    yield system
    await system.stop(grace_s=0)


@pytest.fixture
def store(jobs):
    return jobs.store


@pytest.fixture
def queue(jobs):
    return jobs.default_queue


@pytest.fixture
def recorded_events(jobs) -> list[JobEvent]:
    """Every event published on the job system's bus, in order."""
    events: list[JobEvent] = []
    jobs.events.subscribe(events.append)
    return events


@pytest.fixture
def app(settings, jobs):
    """Create a test FastAPI application bound to the test job system."""
    app = create_app(settings, job_system=jobs)
    # ASGITransport does not run the lifespan
    app.state.jobs = jobs
    return app


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _wait_for(predicate, timeout: float = 5.0, interval: float = 0.02):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        value = await predicate()
        if value:
            return value
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_for():
    """Poll an async predicate until it returns a truthy value."""
    return _wait_for
