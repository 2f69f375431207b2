"""
Built-in job processors.

These implement the JobHandler protocol and are registered in the job
registry at startup (see ``registry_init``).
"""

import json
import logging
import time
from typing import Any

import httpx

from jobs_engine.v1.core.exceptions import ProcessorError
from jobs_engine.v1.jobs.context import JobContext
from jobs_engine.v1.jobs.service import JobService

logger = logging.getLogger(__name__)

CLEANUP_TARGETS = ("completed_jobs", "failed_jobs", "all")


class HttpRequestHandler:
    """
    Job handler that performs one HTTP request.

    Payload expected:
    {
        "url": "https://example.com/hook",
        "method": "POST",            # optional, default GET
        "headers": {...},            # optional
        "body": {...},               # optional, sent as JSON
        "timeout": 10000             # optional, milliseconds
    }

    Transport errors and 5xx responses raise ProcessorError so the attempt is
    retried; any other response is the job's result.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.transport = transport

    async def handle(self, ctx: JobContext) -> dict[str, Any] | None:
        payload = ctx.payload
        url = payload.get("url")
        if not url:
            raise ProcessorError("url is required in payload")

        method = str(payload.get("method", "GET")).upper()
        timeout_ms = payload.get("timeout")
        timeout = timeout_ms / 1000 if timeout_ms else None

        await ctx.update_progress(10)
        started = time.monotonic()

        try:
            async with httpx.AsyncClient(
                transport=self.transport, timeout=timeout
            ) as client:
                response = await client.request(
                    method,
                    url,
                    headers=payload.get("headers") or {},
                    json=payload.get("body"),
                )
        except httpx.HTTPError as e:
            logger.error(
                "HTTP request failed",
                extra={"job_id": str(ctx.job_id), "url": url, "error": str(e)},
            )
            raise ProcessorError(
                f"HTTP request failed: {e}", details={"url": url, "method": method}
            ) from e

        await ctx.update_progress(50)

        if response.status_code >= 500:
            raise ProcessorError(
                f"HTTP {response.status_code} from {url}",
                details={"url": url, "status": response.status_code},
            )

        try:
            body: Any = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = response.text

        await ctx.update_progress(100)

        return {
            "status": response.status_code,
            "status_text": response.reason_phrase,
            "headers": dict(response.headers),
            "body": body,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }


class CleanupHandler:
    """
    Job handler that deletes old terminal jobs and their history.

    Payload expected:
    {
        "target": "completed_jobs" | "failed_jobs" | "all",
        "older_than_hours": 24,      # optional, completed jobs
        "older_than_days": 7         # optional, failed/cancelled jobs
    }
    """

    def __init__(self, job_service: JobService):
        self.job_service = job_service

    async def handle(self, ctx: JobContext) -> dict[str, Any] | None:
        target = ctx.payload.get("target", "all")
        if target not in CLEANUP_TARGETS:
            raise ProcessorError(
                f"Unknown cleanup target: {target}",
                details={"allowed": list(CLEANUP_TARGETS)},
            )
        if ctx.database is None:
            raise ProcessorError("Cleanup needs a database handle")

        await ctx.update_progress(10)

        async with ctx.database.session() as session:
            removed = await self.job_service.cleanup(
                session,
                completed_older_than_hours=ctx.payload.get("older_than_hours"),
                failed_older_than_days=ctx.payload.get("older_than_days"),
                include_completed=target in ("completed_jobs", "all"),
                include_failed=target in ("failed_jobs", "all"),
            )

        await ctx.update_progress(100)

        logger.info(
            "Cleanup job completed",
            extra={"job_id": str(ctx.job_id), "target": target, "removed": removed},
        )
        return {"target": target, "removed_count": removed}
