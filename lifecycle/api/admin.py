"""Operator endpoints for retention and scheduled deletions.

GET  /api/v1/admin/retention/policies             - Policy table and next run
POST /api/v1/admin/retention/policies/{name}/run  - Run one policy now
POST /api/v1/admin/retention/sweep                - Run every policy now
POST /api/v1/admin/deletions/run-due              - Execute due deletions now

Mounted behind the operator network; the endpoints do the same work as the
CLI commands of the same names.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends

from lifecycle.api.dependencies import get_lifecycle_service
from lifecycle.compliance.service import DataLifecycleService
from lifecycle.telemetry import bind_job_context

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/retention/policies")
async def list_policies(
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    return service.retention_status()


@router.post("/retention/policies/{name}/run")
async def run_policy(
    name: str,
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    bind_job_context("retention_policy")
    result = await service.run_policy(name)
    return result.to_dict()


@router.post("/retention/sweep")
async def run_sweep(
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    bind_job_context("retention_sweep")
    report = await service.run_retention_sweep()
    return report.to_dict()


@router.post("/deletions/run-due")
async def run_due_deletions(
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    bind_job_context("due_deletions")
    report = await service.run_due_deletions()
    return report.to_dict()
