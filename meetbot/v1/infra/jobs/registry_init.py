"""
Registers the built-in job handlers with a job registry.
"""

import logging

from meetbot.config.settings import Settings
from meetbot.v1.core.registries import JobRegistry
from meetbot.v1.infra.jobs.handlers import CleanupOldFilesHandler, FileSweeper
from meetbot.v1.infra.jobs.models import JobType
from meetbot.v1.infra.jobs.store import JobStore

logger = logging.getLogger(__name__)


def register_job_handlers(
    registry: JobRegistry,
    store: JobStore,
    settings: Settings,
    file_sweeper: FileSweeper | None = None,
) -> None:
    """Register all built-in job handlers with the job registry."""

    logger.info("Registering job handlers")

    # Maintenance job handlers
    if JobType.CLEANUP_OLD_FILES.value not in registry:
        registry.register(
            JobType.CLEANUP_OLD_FILES.value,
            CleanupOldFilesHandler(store, settings, file_sweeper=file_sweeper),
        )

    logger.info(
        "Job handlers registered", extra={"registered_handlers": registry.list()}
    )
