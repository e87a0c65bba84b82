"""Retention sweep engine.

Runs every policy of the registry once per sweep:

    for policy in registry:
        cutoff = now - policy.retention_days
        [own transaction, own time budget] policy.cleanup(cutoff)

Each policy is its own failure boundary. An exception or an exceeded time
budget rolls back that policy alone, is counted and audited as
``retention.policy_failed``, and the sweep moves on. One
``retention.sweep_completed`` audit record summarises the whole run.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifecycle.compliance.artifacts import ArtifactStore
from lifecycle.compliance.audit import AuditSink
from lifecycle.compliance.errors import PolicyExecutionFailed
from lifecycle.core.clock import Clock, next_daily_run, utc_now
from lifecycle.retention.policies import CleanupContext, RetentionPolicy, RetentionPolicyRegistry

log = structlog.get_logger(__name__)

DEFAULT_POLICY_TIMEOUT_SECONDS = 300.0


@dataclass
class PolicyResult:
    policy: str
    cleaned_count: int
    cutoff: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy": self.policy,
            "cleaned_count": self.cleaned_count,
            "cutoff": self.cutoff.isoformat() if self.cutoff else None,
        }


@dataclass
class RetentionSweepReport:
    """Aggregate outcome of one sweep."""

    started_at: datetime
    total_cleaned: int = 0
    policies_executed: int = 0
    errors: int = 0
    details: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "total_cleaned": self.total_cleaned,
            "policies_executed": self.policies_executed,
            "errors": self.errors,
            "details": dict(self.details),
        }


class RetentionSweepEngine:
    """Executes retention policies against the data estate.

    Usage:
        engine = RetentionSweepEngine(session_factory, RetentionPolicyRegistry())
        report = await engine.run()
        result = await engine.run_policy("session_data")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: RetentionPolicyRegistry,
        *,
        artifacts: ArtifactStore | None = None,
        temp_dir: str | Path | None = None,
        log_dir: str | Path | None = None,
        policy_timeout_seconds: float = DEFAULT_POLICY_TIMEOUT_SECONDS,
        daily_run_hour_utc: int = 2,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._artifacts = artifacts
        self._temp_dir = Path(temp_dir) if temp_dir else None
        self._log_dir = Path(log_dir) if log_dir else None
        self._timeout = policy_timeout_seconds
        self._daily_run_hour_utc = daily_run_hour_utc
        self._clock = clock

    @property
    def registry(self) -> RetentionPolicyRegistry:
        return self._registry

    async def _execute(self, policy: RetentionPolicy, now: datetime) -> PolicyResult:
        cutoff = now - timedelta(days=policy.retention_days)
        async with asyncio.timeout(self._timeout):
            async with self._session_factory() as session, session.begin():
                ctx = CleanupContext(
                    session=session,
                    now=now,
                    cutoff=cutoff,
                    artifacts=self._artifacts,
                    temp_dir=self._temp_dir,
                    log_dir=self._log_dir,
                )
                cleaned = await policy.cleanup(ctx)
        return PolicyResult(policy=policy.name, cleaned_count=cleaned, cutoff=cutoff)

    async def _audit(self, action: str, reference: str | None, metadata: dict[str, Any]) -> None:
        async with self._session_factory() as session, session.begin():
            await AuditSink(session, clock=self._clock).record(
                action, reference=reference, metadata=metadata
            )

    @staticmethod
    def _describe(exc: BaseException) -> str:
        if isinstance(exc, TimeoutError):
            return "time budget exceeded"
        return str(exc) or type(exc).__name__

    async def run(self) -> RetentionSweepReport:
        """Run every policy once; never raises for an individual policy failure."""
        now = self._clock()
        report = RetentionSweepReport(started_at=now)
        log.info("retention.sweep_started", policies=len(self._registry))

        for policy in self._registry:
            report.policies_executed += 1
            try:
                result = await self._execute(policy, now)
            except Exception as exc:
                report.errors += 1
                error = self._describe(exc)
                report.details[policy.name] = {"cleaned_count": 0, "error": error}
                log.error("retention.policy_failed", policy=policy.name, error=error)
                try:
                    await self._audit(
                        "retention.policy_failed",
                        policy.name,
                        {"error": error, "retention_days": policy.retention_days},
                    )
                except Exception:
                    log.exception("retention.audit_failed", policy=policy.name)
                continue

            report.total_cleaned += result.cleaned_count
            report.details[policy.name] = {"cleaned_count": result.cleaned_count}
            log.debug(
                "retention.policy_executed",
                policy=policy.name,
                cleaned_count=result.cleaned_count,
            )

        await self._audit(
            "retention.sweep_completed",
            None,
            {
                "total_cleaned": report.total_cleaned,
                "policies_executed": report.policies_executed,
                "errors": report.errors,
                "details": report.details,
            },
        )
        log.info(
            "retention.sweep_completed",
            total_cleaned=report.total_cleaned,
            policies_executed=report.policies_executed,
            errors=report.errors,
        )
        return report

    async def run_policy(self, name: str) -> PolicyResult:
        """Run a single named policy, e.g. for manual remediation.

        Raises:
            UnknownPolicy: no policy with that name
            PolicyExecutionFailed: the cleanup raised or exceeded its budget
        """
        policy = self._registry.get(name)
        now = self._clock()
        try:
            result = await self._execute(policy, now)
        except Exception as exc:
            error = self._describe(exc)
            log.error("retention.policy_failed", policy=name, error=error, manual=True)
            await self._audit(
                "retention.policy_failed",
                name,
                {"error": error, "retention_days": policy.retention_days, "manual": True},
            )
            raise PolicyExecutionFailed(f"Retention policy {name!r} failed: {error}") from exc

        await self._audit(
            "retention.policy_executed",
            name,
            {"cleaned_count": result.cleaned_count, "manual": True},
        )
        log.info("retention.policy_executed", policy=name, cleaned_count=result.cleaned_count)
        return result

    def status(self) -> dict[str, Any]:
        """Policy table and the next scheduled sweep."""
        return {
            "policies": self._registry.to_dict(),
            "policy_count": len(self._registry),
            "policy_timeout_seconds": self._timeout,
            "next_run_at": next_daily_run(self._clock(), self._daily_run_hour_utc).isoformat(),
        }
