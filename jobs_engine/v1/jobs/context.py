"""
Execution context handed to processors.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from jobs_engine.infra.database import Database

ProgressReporter = Callable[[int], Awaitable[None]]


async def _no_progress(progress: int) -> None:
    return None


@dataclass
class JobContext:
    """
    What a processor sees of the job it is executing.

    ``update_progress`` is advisory and best-effort: values are clamped to
    0-100 and a failed write is logged by the worker, never raised here.
    """

    job_id: UUID
    job_type: str
    queue_name: str
    payload: dict[str, Any]
    options: dict[str, Any]
    attempt: int
    max_attempts: int
    deadline: datetime
    database: Database | None = None
    reporter: ProgressReporter = field(default=_no_progress, repr=False)

    async def update_progress(self, progress: int | float) -> None:
        await self.reporter(clamp_progress(progress))


def clamp_progress(progress: int | float) -> int:
    return max(0, min(100, int(progress)))
