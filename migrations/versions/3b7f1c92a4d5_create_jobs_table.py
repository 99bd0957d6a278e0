"""create jobs table for background job queue

Revision ID: 3b7f1c92a4d5
Revises:
Create Date: 2026-10-18 09:12:40.218653

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7f1c92a4d5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_STATUSES_SQL = "status IN ('pending', 'delayed', 'active', 'retry-scheduled')"


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("queue", sa.Text, nullable=False, comment="Owning queue"),
        sa.Column("type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column(
            "payload", sa.JSON, nullable=True, comment="Opaque handler parameters"
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            comment="pending|delayed|active|completed|failed|retry-scheduled",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            comment="Failed attempts so far",
        ),
        sa.Column(
            "max_attempts", sa.Integer, nullable=False, comment="Attempt ceiling"
        ),
        sa.Column(
            "available_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            comment="Earliest claim time",
        ),
        # Claim coordination
        sa.Column(
            "locked_by",
            sa.Text,
            nullable=True,
            comment="Worker slot holding the claim",
        ),
        sa.Column(
            "locked_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the claim was made",
        ),
        sa.Column(
            "lease_expires_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Claim lease deadline",
        ),
        # Outcome
        sa.Column("result", sa.JSON, nullable=True, comment="Handler result"),
        sa.Column("last_error", sa.Text, nullable=True, comment="Last failure reason"),
        sa.Column(
            "dedupe_key",
            sa.Text,
            nullable=True,
            comment="Deduplication key for live jobs",
        ),
        # Timestamps
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Constraints
        sa.CheckConstraint(
            "status IN ('pending', 'delayed', 'active', 'completed', 'failed', 'retry-scheduled')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("attempts >= 0", name="jobs_attempts_check"),
        sa.CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
    )

    # Claim scans filter by queue and status, ordered by available_at
    op.create_index(
        "ix_jobs_queue_status_available_at",
        "jobs",
        ["queue", "status", "available_at"],
    )
    op.create_index("ix_jobs_lease_expires_at", "jobs", ["lease_expires_at"])
    op.create_index("ix_jobs_updated_at", "jobs", ["updated_at"])
    op.create_index(
        "ix_jobs_dedupe_key_created_at", "jobs", ["dedupe_key", "created_at"]
    )

    # A dedupe key is unique among non-terminal jobs only, so it can be reused
    # once the previous job completed or failed
    op.create_index(
        "ix_jobs_dedupe_key_live",
        "jobs",
        ["dedupe_key"],
        unique=True,
        postgresql_where=sa.text(f"dedupe_key IS NOT NULL AND {LIVE_STATUSES_SQL}"),
        sqlite_where=sa.text(f"dedupe_key IS NOT NULL AND {LIVE_STATUSES_SQL}"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_jobs_dedupe_key_live", table_name="jobs")
    op.drop_index("ix_jobs_dedupe_key_created_at", table_name="jobs")
    op.drop_index("ix_jobs_updated_at", table_name="jobs")
    op.drop_index("ix_jobs_lease_expires_at", table_name="jobs")
    op.drop_index("ix_jobs_queue_status_available_at", table_name="jobs")
    op.drop_table("jobs")
