"""Lifecycle scheduler - the daily trigger for deletions and retention.

One daily run executes, in order:
1. Due deletions (grace periods that have ended)
2. The retention sweep over every policy

Deletions go first so that anonymized subjects are already in place when
the ``deleted_users`` policy looks at them in a later run.

The trigger is normally an external cron calling ``python -m lifecycle.cli
daily``. With ``SCHEDULER_ENABLED=true`` the API process runs the same job
in-process instead, sleeping until ``daily_hour_utc`` each day.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from lifecycle.compliance.grace import DueDeletionReport
from lifecycle.compliance.service import DataLifecycleService
from lifecycle.core.clock import Clock, next_daily_run, utc_now
from lifecycle.retention.sweep import RetentionSweepReport
from lifecycle.telemetry import bind_job_context, clear_context

log = structlog.get_logger(__name__)


@dataclass
class ScheduleConfig:
    """Daily trigger configuration."""

    daily_hour_utc: int = 2
    # When false, start() is a no-op and an external cron drives run_once()
    enabled: bool = True

    def __post_init__(self) -> None:
        if not 0 <= self.daily_hour_utc <= 23:
            raise ValueError("daily_hour_utc must be between 0 and 23")


@dataclass
class DailyRunReport:
    started_at: datetime
    finished_at: datetime
    deletions: DueDeletionReport
    retention: RetentionSweepReport

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "deletions": self.deletions.to_dict(),
            "retention": self.retention.to_dict(),
        }


class LifecycleScheduler:
    """Runs the daily lifecycle job, once on demand or in a loop.

    Usage:
        scheduler = LifecycleScheduler(service, ScheduleConfig(daily_hour_utc=2))
        report = await scheduler.run_once()

        await scheduler.start()   # in-process loop
        await scheduler.stop()
    """

    def __init__(
        self,
        service: DataLifecycleService,
        config: ScheduleConfig | None = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._service = service
        self._config = config or ScheduleConfig()
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_run_at(self, now: datetime | None = None) -> datetime:
        return next_daily_run(now or self._clock(), self._config.daily_hour_utc)

    async def run_once(self) -> DailyRunReport:
        """Due deletions, then the retention sweep."""
        bind_job_context("daily_run")
        started_at = self._clock()
        log.info("scheduler.daily_run_started")
        try:
            deletions = await self._run_due_deletions()
            retention = await self._run_retention_sweep(started_at)
        finally:
            clear_context()

        report = DailyRunReport(
            started_at=started_at,
            finished_at=self._clock(),
            deletions=deletions,
            retention=retention,
        )
        log.info(
            "scheduler.daily_run_completed",
            deletions_processed=deletions.processed,
            deletion_errors=deletions.errors,
            total_cleaned=retention.total_cleaned,
            retention_errors=retention.errors,
        )
        return report

    async def _run_due_deletions(self) -> DueDeletionReport:
        # Per-item failures are counted inside; this catches the batch itself failing
        try:
            return await self._service.run_due_deletions()
        except Exception as exc:
            log.exception("scheduler.due_deletions_failed")
            return DueDeletionReport(errors=1, failures=[{"request_id": "", "error": str(exc)}])

    async def _run_retention_sweep(self, started_at: datetime) -> RetentionSweepReport:
        try:
            return await self._service.run_retention_sweep()
        except Exception as exc:
            log.exception("scheduler.retention_sweep_failed")
            return RetentionSweepReport(
                started_at=started_at, errors=1, details={"sweep": {"error": str(exc)}}
            )

    async def start(self) -> None:
        """Start the in-process daily loop (no-op when the config disables it)."""
        if not self._config.enabled:
            log.info("scheduler.disabled")
            return
        if self.running:
            log.warning("scheduler.already_running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="lifecycle-scheduler")
        log.info("scheduler.started", next_run_at=self.next_run_at().isoformat())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("scheduler.stopped")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            now = self._clock()
            delay = (self.next_run_at(now) - now).total_seconds()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                return
            except TimeoutError:
                pass

            try:
                await self.run_once()
            except Exception:
                # A failed day must not end the loop; tomorrow's run retries
                log.exception("scheduler.daily_run_failed")
