"""Telemetry package: structured logging configuration and context helpers."""

from __future__ import annotations

from lifecycle.telemetry.logging import (
    RequestIdMiddleware,
    bind_job_context,
    bind_subject_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_job_context",
    "bind_subject_context",
    "clear_context",
    "configure_logging",
]
