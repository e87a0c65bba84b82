"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from fastapi import Request

from lifecycle.compliance.service import DataLifecycleService


def get_lifecycle_service(request: Request) -> DataLifecycleService:
    """Return the service built during application startup.

    Tests replace it through ``app.dependency_overrides``.
    """
    service: DataLifecycleService | None = getattr(request.app.state, "lifecycle_service", None)
    if service is None:
        raise RuntimeError("Lifecycle service not initialized. Is the lifespan running?")
    return service
