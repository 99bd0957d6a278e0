"""
Job system models: the persisted job record and its status machine.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from meetbot.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry-scheduled"


class JobType(str, Enum):
    """Built-in job types."""

    PROCESS_RECORDING = "process-recording"
    TRANSCRIBE_AUDIO = "transcribe-audio"
    GENERATE_SUMMARY = "generate-summary"
    CLEANUP_OLD_FILES = "cleanup-old-files"


# Statuses a worker may claim once available_at has passed
CLAIMABLE_STATUSES = (
    JobStatus.PENDING.value,
    JobStatus.DELAYED.value,
    JobStatus.RETRY_SCHEDULED.value,
)

# Statuses counted as queue depth
WAITING_STATUSES = CLAIMABLE_STATUSES

# Non-terminal statuses; a dedupe key is unique among these
LIVE_STATUSES = CLAIMABLE_STATUSES + (JobStatus.ACTIVE.value,)

TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

_LIVE_SQL = "status IN ('pending', 'delayed', 'active', 'retry-scheduled')"


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class Job(Base):
    """
    Persisted background job.

    Provides:
    - Claim coordination (locked_by, lease_expires_at kept alive by heartbeats)
    - Retry bookkeeping (attempts, max_attempts, available_at, last_error)
    - Deduplication of live jobs via dedupe_key
    """

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    queue: Mapped[str] = mapped_column(Text, nullable=False, comment="Owning queue")
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    payload: Mapped[Any] = mapped_column(
        JSON, nullable=True, comment="Opaque handler parameters"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="pending|delayed|active|completed|failed|retry-scheduled",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Failed attempts so far"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, comment="Attempt ceiling"
    )
    available_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, comment="Earliest claim time"
    )

    # Claim coordination
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker slot holding the claim"
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="When the claim was made"
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Claim lease deadline"
    )

    # Outcome
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Handler result"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last failure reason"
    )
    dedupe_key: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Deduplication key for live jobs"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'delayed', 'active', 'completed', 'failed', 'retry-scheduled')",
            name="jobs_status_check",
        ),
        CheckConstraint("attempts >= 0", name="jobs_attempts_check"),
        CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
        Index("ix_jobs_queue_status_available_at", "queue", "status", "available_at"),
        Index("ix_jobs_lease_expires_at", "lease_expires_at"),
        Index("ix_jobs_updated_at", "updated_at"),
        Index("ix_jobs_dedupe_key_created_at", "dedupe_key", "created_at"),
        Index(
            "ix_jobs_dedupe_key_live",
            "dedupe_key",
            unique=True,
            postgresql_where=text(f"dedupe_key IS NOT NULL AND {_LIVE_SQL}"),
            sqlite_where=text(f"dedupe_key IS NOT NULL AND {_LIVE_SQL}"),
        ),
    )
