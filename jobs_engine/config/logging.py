import logging
import sys
from typing import Any

import structlog

from .settings import Settings, settings


def _renderer(app_settings: Settings) -> Any:
    # Console output while developing, one JSON object per line otherwise
    if app_settings.debug:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(app_settings: Settings | None = None) -> None:
    """Configure structlog for the API, workers, scheduler and CLI.

    Engine modules log through structlog; services and routes use stdlib
    loggers, which share the level and stream configured here.
    """
    app_settings = app_settings or settings
    level = getattr(logging, app_settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger("jobs_engine").setLevel(level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
    ]
    if app_settings.debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            )
        )
    processors += [structlog.processors.format_exc_info, _renderer(app_settings)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Replace the request-scoped context bound to every log line."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def bind_worker_context(worker_id: str, **context: Any) -> None:
    """Bind worker identity to every log line emitted by this process."""
    structlog.contextvars.bind_contextvars(worker_id=worker_id, **context)
