"""Top-level API router aggregating all sub-routers.

Public routes (no /api/v1 prefix): /health
Versioned routes: /api/v1/privacy/..., /api/v1/admin/...
"""

from __future__ import annotations

from fastapi import APIRouter

from lifecycle.api import admin, health, privacy

public_router = APIRouter()
public_router.include_router(health.router)

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(privacy.router)
api_v1_router.include_router(admin.router)
