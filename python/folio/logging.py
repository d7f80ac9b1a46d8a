"""Structured logging configuration using structlog.

Provides JSON-formatted logs with consistent context including:
- request_id: Correlation ID for request tracing
- path / method: Raw request path (never includes query string) and HTTP method
- job_id / job_type: Background job context
- chapter_id: Chapter being processed (processing jobs only)
- timestamp: ISO8601 formatted timestamp

Usage:
    from folio.logging import get_logger, configure_logging

    # Configure once at startup
    configure_logging()

    # Get a logger for a module
    logger = get_logger(__name__)
    logger.info("something_happened", extra_field="value")

Background Job Logging:
    Jobs run on worker threads, so the runner binds job context at the start
    of every job and clears it afterwards:

    configure_job_logging(job_id=job.id, job_type=job.type, request_id=request_id)
    try:
        ...
    finally:
        clear_job_context()
"""

import logging
import sys
from contextvars import ContextVar

import structlog

# Context variables for request-scoped logging
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
path_var: ContextVar[str | None] = ContextVar("path", default=None)
method_var: ContextVar[str | None] = ContextVar("method", default=None)

# Context variables for background jobs
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
job_type_var: ContextVar[str | None] = ContextVar("job_type", default=None)
chapter_id_var: ContextVar[int | None] = ContextVar("chapter_id", default=None)


def add_request_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Add request and job context to all log entries.

    Injects all non-None ContextVar values into the log event dict.
    Explicit event fields win over context values.
    """
    context = {
        "request_id": request_id_var.get(),
        "path": path_var.get(),
        "method": method_var.get(),
        "job_id": job_id_var.get(),
        "job_type": job_type_var.get(),
        "chapter_id": chapter_id_var.get(),
    }
    for key, value in context.items():
        if value is not None and key not in event_dict:
            event_dict[key] = value

    return event_dict


def configure_logging(json_format: bool = True, level: int = logging.INFO) -> None:
    """Configure structlog for the application.

    Args:
        json_format: If True, output JSON logs. If False, output console-friendly logs.
        level: Root log level.
    """
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_request_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (uvicorn, botocore) through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Silence noisy loggers
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger for the given name.

    Args:
        name: Logger name (typically __name__).

    Returns:
        A bound structlog logger.
    """
    return structlog.get_logger(name)


def set_request_context(
    request_id: str | None,
    path: str | None = None,
    method: str | None = None,
) -> None:
    """Set request context for the current async context."""
    request_id_var.set(request_id)
    if path is not None:
        path_var.set(path)
    if method is not None:
        method_var.set(method)


def clear_request_context() -> None:
    """Clear all request-scoped context at the end of a request."""
    request_id_var.set(None)
    path_var.set(None)
    method_var.set(None)


def get_request_id() -> str | None:
    """Get the current request ID from context."""
    return request_id_var.get()


def configure_job_logging(
    job_id: str | None = None,
    job_type: str | None = None,
    request_id: str | None = None,
) -> None:
    """Bind logging context for a background job on the current worker thread.

    Args:
        job_id: The runner's job ID.
        job_type: The job type tag (e.g. "chapter_processing").
        request_id: The request that submitted the job, for correlation.
    """
    job_id_var.set(job_id)
    job_type_var.set(job_type)
    request_id_var.set(request_id)


def set_chapter_context(chapter_id: int | None) -> None:
    """Attach the chapter being processed to subsequent log entries."""
    chapter_id_var.set(chapter_id)


def clear_job_context() -> None:
    """Clear job context at the end of a job."""
    job_id_var.set(None)
    job_type_var.set(None)
    chapter_id_var.set(None)
    request_id_var.set(None)
