"""
Job management API endpoints.

Provides endpoints for job enqueueing, inspection and manual retry.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from meetbot.config.logging import get_logger
from meetbot.v1.core.exceptions import create_success_response
from meetbot.v1.infra.jobs.runtime import JobSystem
from meetbot.v1.infra.jobs.schemas import EnqueueOptions, JobEnqueueRequest
from meetbot.v1.infra.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_system(request: Request) -> JobSystem:
    """Dependency returning the job system created by the app lifespan."""
    return request.app.state.jobs


def get_job_service(jobs: JobSystem = Depends(get_job_system)) -> JobService:
    return jobs.service


JobServiceDep = Depends(get_job_service)


@router.post("", response_model=dict)
async def enqueue_job(
    job_request: JobEnqueueRequest,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Enqueue a new background job."""

    result = await service.submit(
        job_request.queue,
        job_request.type,
        job_request.payload,
        EnqueueOptions(
            delay_ms=job_request.delay_ms,
            max_attempts=job_request.max_attempts,
            dedupe_key=job_request.dedupe_key,
        ),
    )

    logger.info(
        "Job enqueued via API",
        job_id=str(result.job_id),
        type=job_request.type,
        deduplicated=result.deduplicated,
    )

    return create_success_response(data=result.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    queue: str | None = Query(default=None, description="Restrict to one queue"),
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Get job statistics."""

    stats = await service.get_job_stats(queue)
    data = stats.model_dump(mode="json")
    data["local_active_workers"] = service.active_worker_count()

    return create_success_response(data=data)


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job = await service.get_job(job_id)
    return create_success_response(data=job.model_dump(mode="json"))


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: UUID,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Retry a failed job."""

    success = await service.retry_job(job_id)

    if not success:
        raise HTTPException(status_code=409, detail="Job is not eligible for retry")

    logger.info("Job retried via API", job_id=str(job_id))

    return create_success_response(data={"success": True, "job_id": str(job_id)})
