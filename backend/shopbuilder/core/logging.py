"""Structured logging for the app builder backend.

structlog renders both our own events and stdlib records from third-party
clients (uvicorn, e2b, anthropic, boto3) through one ProcessorFormatter:
JSON in production, ConsoleRenderer in debug mode.

Every event carries the request's correlation id when there is one. Job
background work (launch, poll ticks, ceiling) runs outside any request, so it
binds job_id and sandbox_id through job_context() instead.
"""

import logging
import logging.config
from contextlib import AbstractContextManager

import structlog
from asgi_correlation_id.context import correlation_id

# Client libraries that log every HTTP round trip at INFO/DEBUG. A poll tick
# alone makes several e2b envd calls per job.
QUIET_LOGGERS = (
    "uvicorn.access",
    "httpx",
    "httpcore",
    "e2b",
    "e2b_code_interpreter",
    "anthropic",
    "botocore",
    "boto3",
    "s3transfer",
    "urllib3",
)


def add_correlation_id(logger, method, event_dict):
    """Inject correlation_id from asgi-correlation-id context into every log entry."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def job_context(job_id: str, sandbox_id: str | None = None) -> AbstractContextManager:
    """Bind job_id (and sandbox_id once known) to every event logged inside the block."""
    fields = {"job_id": job_id}
    if sandbox_id:
        fields["sandbox_id"] = sandbox_id
    return structlog.contextvars.bound_contextvars(**fields)


def quiet_loggers(level: str = "WARNING") -> dict[str, dict]:
    """dictConfig "loggers" section raising the chatty client loggers to level."""
    return {name: {"level": level} for name in QUIET_LOGGERS}


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog with stdlib bridge.

    Call this BEFORE any other app imports (structlog caches the processor
    chain on first use). In debug mode the client loggers stay at INFO so
    sandbox and S3 traffic is visible.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structlog": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structlog",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": quiet_loggers("WARNING" if json_logs else "INFO"),
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
