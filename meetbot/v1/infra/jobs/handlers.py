"""
Built-in job handlers.

Media processing handlers (recording, transcription, summary) live with the
services that own that work and are registered by them at startup.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, Union

from meetbot.config.settings import Settings
from meetbot.v1.infra.jobs.models import utcnow
from meetbot.v1.infra.jobs.schemas import JobRecord
from meetbot.v1.infra.jobs.store import JobStore

logger = logging.getLogger(__name__)

# Receives the retention cutoff, returns how many files it removed
FileSweeper = Callable[[datetime], Union[int, Awaitable[int]]]


class CleanupOldFilesHandler:
    """
    Job handler for retention cleanup.

    Payload expected:
    {
        "retention_days": 30,  # optional, defaults to RECORDING_RETENTION_DAYS
        "dry_run": false  # optional
    }
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        file_sweeper: FileSweeper | None = None,
    ):
        self.store = store
        self.settings = settings
        self.file_sweeper = file_sweeper

    async def handle(self, job: JobRecord) -> dict[str, Any] | None:
        """Purge finished jobs and expired files older than the retention window."""

        payload = job.payload if isinstance(job.payload, dict) else {}
        retention_days = payload.get(
            "retention_days", self.settings.recording_retention_days
        )
        dry_run = payload.get("dry_run", False)

        if not isinstance(retention_days, int) or retention_days < 1:
            raise ValueError(f"retention_days must be a positive integer, got: {retention_days}")

        retention = timedelta(days=retention_days)
        cutoff = utcnow() - retention
        results: dict[str, Any] = {}

        logger.info(
            "Starting retention cleanup",
            extra={
                "job_id": str(job.id),
                "retention_days": retention_days,
                "cutoff": cutoff.isoformat(),
                "dry_run": dry_run,
            },
        )

        if dry_run:
            results["jobs"] = {"status": "dry_run"}
        else:
            deleted_count = await self.store.purge_finished(retention)
            results["jobs"] = {"status": "completed", "deleted_count": deleted_count}

        if self.file_sweeper is None:
            results["files"] = {"status": "skipped", "reason": "no_file_sweeper"}
        elif dry_run:
            results["files"] = {"status": "dry_run"}
        else:
            removed = self.file_sweeper(cutoff)
            if inspect.isawaitable(removed):
                removed = await removed
            results["files"] = {"status": "completed", "deleted_count": removed}

        logger.info(
            "Retention cleanup completed",
            extra={"job_id": str(job.id), "results": results},
        )

        return {
            "status": "completed",
            "cutoff": cutoff.isoformat(),
            "dry_run": dry_run,
            "results": results,
        }
