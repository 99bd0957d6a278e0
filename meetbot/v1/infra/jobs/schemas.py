"""
Job system Pydantic schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from meetbot.v1.infra.jobs.models import JobStatus


class EnqueueOptions(BaseModel):
    """Per-enqueue options."""

    delay_ms: int = Field(default=0, description="Delay before the job may run")
    max_attempts: int | None = Field(
        default=None, description="Attempt ceiling; defaults to the type's policy"
    )
    dedupe_key: str | None = Field(default=None, description="Deduplication key")


class JobRecord(BaseModel):
    """Immutable snapshot of a persisted job."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    queue: str
    type: str
    payload: Any = None
    status: JobStatus
    attempts: int
    max_attempts: int
    available_at: datetime

    # Claim coordination
    locked_by: str | None = None
    locked_at: datetime | None = None
    lease_expires_at: datetime | None = None

    # Outcome
    result: dict[str, Any] | None = None
    last_error: str | None = None
    dedupe_key: str | None = None

    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class RetryDecision(BaseModel):
    """Outcome of recording a failed attempt."""

    model_config = ConfigDict(frozen=True)

    job_id: UUID
    queue: str
    type: str
    status: JobStatus
    attempts: int
    max_attempts: int
    error: str
    delay_ms: int | None = None
    available_at: datetime | None = None

    @property
    def will_retry(self) -> bool:
        return self.status == JobStatus.RETRY_SCHEDULED


class JobEventType(str, Enum):
    """Lifecycle notifications published on the event bus."""

    ENQUEUED = "enqueued"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRIED = "retried"


class JobEvent(BaseModel):
    """A job lifecycle transition."""

    model_config = ConfigDict(frozen=True)

    event: JobEventType
    job_id: UUID
    type: str
    status: JobStatus
    queue: str
    attempts: int = 0
    timestamp: datetime
    error: str | None = None


class JobEnqueueRequest(BaseModel):
    """Schema for enqueueing jobs via API."""

    type: str = Field(..., description="Job type")
    payload: Any = Field(default_factory=dict, description="Job payload")
    queue: str | None = Field(default=None, description="Target queue, default if unset")
    delay_ms: int = Field(default=0, ge=0, description="Delay before the job may run")
    max_attempts: int | None = Field(default=None, ge=1, description="Attempt ceiling")
    dedupe_key: str | None = Field(default=None, description="Deduplication key")


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: UUID
    status: JobStatus
    deduplicated: bool = Field(
        default=False, description="Whether an existing live job was returned"
    )


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    queue: str | None = None
    by_status: dict[str, int]
    queue_depth: int  # pending + delayed + retry-scheduled
    active_jobs: int
    active_workers: int
