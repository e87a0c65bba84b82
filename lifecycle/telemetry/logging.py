"""Structured logging configuration.

Configures structlog with JSON output in production and a console renderer
in development.

Log format (production):
    {
        "timestamp": "2026-10-19T02:00:01.123456Z",
        "level": "info",
        "event": "retention.sweep_completed",
        "logger": "lifecycle.retention.sweep",
        "job": "daily_run",
        "total_cleaned": 118,
        "policies_executed": 14,
        "errors": 0
    }
"""

from __future__ import annotations

import logging
import sys
import uuid
from typing import Any, TextIO

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Where log lines go (stdout by default; the CLI keeps stdout
            for its JSON report and passes stderr)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Request ID Middleware
# ------------------------------------------------------------------ #


class RequestIdMiddleware:
    """Middleware that generates and propagates request IDs.

    Adds a unique request_id to each request's context variables, which are
    then included in all log entries for that request. The request_id is
    also returned as the ``x-request-id`` response header.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = f"req_{uuid.uuid4().hex[:16]}"

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        async def send_with_request_id(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode()))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_with_request_id)


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_subject_context(subject_id: str | uuid.UUID) -> None:
    """Bind the data subject ID to the log context."""
    structlog.contextvars.bind_contextvars(subject_id=str(subject_id))


def bind_job_context(job: str) -> None:
    """Bind the name of a periodic job (daily run, sweep) to the log context."""
    structlog.contextvars.bind_contextvars(job=job, job_run_id=uuid.uuid4().hex[:12])


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
