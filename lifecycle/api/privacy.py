"""Data subject facing privacy endpoints.

POST /api/v1/privacy/requests                        - Create a request (returns token)
POST /api/v1/privacy/requests/verify                 - Redeem a verification token
POST /api/v1/privacy/requests/{id}/cancel            - Cancel a graced deletion
GET  /api/v1/privacy/requests/{id}?subject_id=       - Request status (owner only)
GET  /api/v1/privacy/subjects/{subject_id}/requests  - The subject's requests
GET  /api/v1/privacy/subjects/{subject_id}/agreement - Processing agreement summary
PUT  /api/v1/privacy/subjects/{subject_id}/consent   - Update consent preferences
GET  /api/v1/privacy/artifacts/{key}                 - Download an export (signed link)

Authentication is handled upstream; these endpoints trust the subject_id
they are given and only check that a request belongs to it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from lifecycle.api.dependencies import get_lifecycle_service
from lifecycle.compliance.requests import DataSubjectRequest, RequestType
from lifecycle.compliance.service import DataLifecycleService
from lifecycle.telemetry import bind_subject_context

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/privacy", tags=["privacy"])


# ------------------------------------------------------------------ #
# Request / response models
# ------------------------------------------------------------------ #


class CreateRequestBody(BaseModel):
    subject_id: uuid.UUID
    # Validated by the engine so unknown types surface as invalid_request_type
    request_type: str = Field(
        ...,
        description="One of: " + ", ".join(t.value for t in RequestType),
    )
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreateRequestResponse(BaseModel):
    request_id: uuid.UUID
    verification_token: str
    status: str


class VerifyBody(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)


class CancelBody(BaseModel):
    subject_id: uuid.UUID
    reason: str | None = Field(default=None, max_length=500)


class RequestResponse(BaseModel):
    request_id: uuid.UUID
    subject_id: uuid.UUID
    request_type: str
    status: str
    requested_at: datetime
    verified_at: datetime | None
    completed_at: datetime | None
    deletion_scheduled_for: datetime | None
    export_artifact_ref: str | None
    artifact_expires_at: datetime | None
    metadata: dict[str, Any]
    outcome: dict[str, Any] | None

    @classmethod
    def from_request(cls, request: DataSubjectRequest) -> RequestResponse:
        return cls.model_validate(request.to_dict())


class ConsentBody(BaseModel):
    marketing: bool | None = None
    analytics: bool | None = None
    data_processing: bool | None = None


# ------------------------------------------------------------------ #
# Endpoints
# ------------------------------------------------------------------ #


@router.post(
    "/requests",
    response_model=CreateRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_request(
    body: CreateRequestBody,
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> CreateRequestResponse:
    bind_subject_context(body.subject_id)
    request = await service.create_request(body.subject_id, body.request_type, body.metadata)
    # The token is delivered out of band in production; returning it here
    # lets the notification collaborator pick it up.
    return CreateRequestResponse(
        request_id=request.id,
        verification_token=request.verification_token or "",
        status=str(request.status),
    )


@router.post("/requests/verify", response_model=RequestResponse)
async def verify_request(
    body: VerifyBody,
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> RequestResponse:
    request = await service.verify(body.token)
    return RequestResponse.from_request(request)


@router.post("/requests/{request_id}/cancel", response_model=RequestResponse)
async def cancel_request(
    request_id: uuid.UUID,
    body: CancelBody,
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> RequestResponse:
    bind_subject_context(body.subject_id)
    kwargs: dict[str, Any] = {"subject_id": body.subject_id}
    if body.reason:
        kwargs["reason"] = body.reason
    request = await service.cancel_deletion(request_id, **kwargs)
    return RequestResponse.from_request(request)


@router.get("/requests/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: uuid.UUID,
    subject_id: uuid.UUID = Query(...),
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> RequestResponse:
    request = await service.get_request(request_id, subject_id)
    return RequestResponse.from_request(request)


@router.get("/subjects/{subject_id}/requests", response_model=list[RequestResponse])
async def list_requests(
    subject_id: uuid.UUID,
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> list[RequestResponse]:
    return [RequestResponse.from_request(r) for r in await service.list_requests(subject_id)]


@router.get("/subjects/{subject_id}/agreement")
async def processing_agreement(
    subject_id: uuid.UUID,
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    return await service.processing_agreement(subject_id)


@router.put("/subjects/{subject_id}/consent")
async def update_consent(
    subject_id: uuid.UUID,
    body: ConsentBody,
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> dict[str, bool]:
    bind_subject_context(subject_id)
    return await service.update_consent(
        subject_id,
        marketing=body.marketing,
        analytics=body.analytics,
        data_processing=body.data_processing,
    )


@router.get("/artifacts/{key}")
async def download_artifact(
    key: str,
    expires: int = Query(...),
    signature: str = Query(..., min_length=64, max_length=64),
    service: DataLifecycleService = Depends(get_lifecycle_service),
) -> Response:
    content = await service.open_artifact(key, expires=expires, signature=signature)
    media_type = "text/csv" if key.endswith(".csv") else "application/json"
    log.info("privacy.artifact_downloaded", key=key)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{key}"'},
    )
