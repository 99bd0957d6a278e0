from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from meetbot.config.logging import get_logger
from meetbot.config.settings import Settings, SettingsDep
from meetbot.v1.core.exceptions import create_success_response
from meetbot.v1.infra.jobs.routes import get_job_system
from meetbot.v1.infra.jobs.runtime import JobSystem

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker health status."""

    running: bool = False
    active_workers: int = 0
    cluster_active_workers: int = 0
    queue_depth: int = 0


class HealthResponse(BaseModel):
    """Health response with worker and database status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    worker: WorkerHealth | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, jobs: JobSystem = Depends(get_job_system)
):
    """Health check endpoint with database and worker status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(jobs)

    worker_health = None
    if db_health.connected:
        try:
            worker_health = await _check_worker_health(jobs)
        except Exception:
            # Worker health check failure doesn't fail overall health
            logger.exception("Worker health check failed")
            worker_health = WorkerHealth(running=jobs.pool.running)

    health = HealthResponse(
        ok=db_health.connected,
        version=settings.version,
        environment=settings.environment,
        timestamp=timestamp,
        database=db_health,
        worker=worker_health,
    )

    return create_success_response(data=health.model_dump())


async def _check_database_health(jobs: JobSystem) -> DatabaseHealth:
    """Check database connectivity and response time."""
    try:
        response_time_ms = await jobs.store.ping()
        return DatabaseHealth(connected=True, response_time_ms=round(response_time_ms, 2))
    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_worker_health(jobs: JobSystem) -> WorkerHealth:
    """Check job worker health and queue status."""
    return WorkerHealth(
        running=jobs.pool.running,
        active_workers=jobs.pool.active_worker_count(),
        cluster_active_workers=await jobs.store.active_worker_count(
            jobs.default_queue.name
        ),
        queue_depth=await jobs.service.queue_depth(),
    )
