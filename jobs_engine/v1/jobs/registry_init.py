"""
Job registry initialization.

Registers the built-in processors with a job registry.
"""

import logging

from jobs_engine.v1.core.registries import JobRegistry
from jobs_engine.v1.jobs.processors import CleanupHandler, HttpRequestHandler
from jobs_engine.v1.jobs.service import JobService

logger = logging.getLogger(__name__)


def register_job_handlers(registry: JobRegistry, job_service: JobService) -> None:
    """Register all built-in job handlers with the job registry."""

    if registry.is_frozen():
        return

    logger.info("Registering job handlers")

    registry.register("http-request", HttpRequestHandler())
    registry.register("cleanup", CleanupHandler(job_service))

    logger.info(
        "Job handlers registered", extra={"registered_handlers": registry.list()}
    )
