"""End-to-end tests of the HTTP surface through an ASGI transport."""

import uuid
from collections.abc import AsyncGenerator
from urllib.parse import urlsplit

import httpx
import pytest

from lifecycle.api.dependencies import get_lifecycle_service
from lifecycle.main import create_app


@pytest.fixture
async def client(service) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app()
    app.dependency_overrides[get_lifecycle_service] = lambda: service
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def create(client, subject_id, request_type, metadata=None):
    response = await client.post(
        "/api/v1/privacy/requests",
        json={
            "subject_id": str(subject_id),
            "request_type": request_type,
            "metadata": metadata or {},
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.headers["x-request-id"].startswith("req_")


class TestRequestEndpoints:
    """Test the data subject request lifecycle over HTTP."""

    @pytest.mark.asyncio
    async def test_create_and_verify_export(self, client, subject):
        created = await create(client, subject.id, "export", {"format": "json"})
        assert created["status"] == "pending"
        assert len(created["verification_token"]) == 64

        response = await client.post(
            "/api/v1/privacy/requests/verify",
            json={"token": created["verification_token"]},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert "verification_token" not in body

        download = await client.get(body["outcome"]["download_url"])
        assert download.status_code == 200
        assert download.headers["content-type"].startswith("application/json")
        assert download.json()["profile"]["email"] == subject.email

    @pytest.mark.asyncio
    async def test_tampered_download_link(self, client, subject):
        created = await create(client, subject.id, "export", {})
        body = (
            await client.post(
                "/api/v1/privacy/requests/verify",
                json={"token": created["verification_token"]},
            )
        ).json()
        url = urlsplit(body["outcome"]["download_url"])
        forged = f"{url.path}?{url.query[:-4]}beef"

        response = await client.get(forged)
        assert response.status_code == 404
        assert response.json()["error"] == "artifact_not_found"

    @pytest.mark.asyncio
    async def test_invalid_request_type(self, client, subject):
        response = await client.post(
            "/api/v1/privacy/requests",
            json={"subject_id": str(subject.id), "request_type": "forget", "metadata": {}},
        )
        assert response.status_code == 422
        assert response.json()["error"] == "invalid_request_type"

    @pytest.mark.asyncio
    async def test_bad_token(self, client):
        response = await client.post(
            "/api/v1/privacy/requests/verify", json={"token": "0" * 64}
        )
        assert response.status_code == 400
        assert response.json() == {
            "error": "token_invalid_or_expired",
            "detail": "Verification token is invalid or expired",
        }

    @pytest.mark.asyncio
    async def test_deletion_cancel_flow(self, client, subject, clock):
        created = await create(client, subject.id, "deletion")
        verified = (
            await client.post(
                "/api/v1/privacy/requests/verify",
                json={"token": created["verification_token"]},
            )
        ).json()
        assert verified["status"] == "processing"
        clock.advance(days=3)

        response = await client.post(
            f"/api/v1/privacy/requests/{created['request_id']}/cancel",
            json={"subject_id": str(subject.id), "reason": "Changed my mind"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        again = await client.post(
            f"/api/v1/privacy/requests/{created['request_id']}/cancel",
            json={"subject_id": str(subject.id)},
        )
        assert again.status_code == 409
        assert again.json()["error"] == "not_cancellable"

    @pytest.mark.asyncio
    async def test_status_is_owner_scoped(self, client, subject):
        created = await create(client, subject.id, "export")
        path = f"/api/v1/privacy/requests/{created['request_id']}"

        own = await client.get(path, params={"subject_id": str(subject.id)})
        assert own.status_code == 200
        assert own.json()["request_id"] == created["request_id"]

        other = await client.get(path, params={"subject_id": str(subject.host_id)})
        assert other.status_code == 404
        assert other.json()["error"] == "request_not_found"

    @pytest.mark.asyncio
    async def test_list_subject_requests(self, client, subject):
        await create(client, subject.id, "export")
        response = await client.get(f"/api/v1/privacy/subjects/{subject.id}/requests")
        assert response.status_code == 200
        assert len(response.json()) == 1


class TestSubjectEndpoints:
    @pytest.mark.asyncio
    async def test_agreement(self, client, subject):
        response = await client.get(f"/api/v1/privacy/subjects/{subject.id}/agreement")
        assert response.status_code == 200
        assert len(response.json()["retention"]) == 14

    @pytest.mark.asyncio
    async def test_unknown_subject_agreement(self, client):
        response = await client.get(f"/api/v1/privacy/subjects/{uuid.uuid4()}/agreement")
        assert response.status_code == 404
        assert response.json()["error"] == "subject_not_found"

    @pytest.mark.asyncio
    async def test_consent_update(self, client, subject):
        response = await client.put(
            f"/api/v1/privacy/subjects/{subject.id}/consent", json={"analytics": False}
        )
        assert response.status_code == 200
        assert response.json()["analytics"] is False

    @pytest.mark.asyncio
    async def test_required_consent_conflict(self, client, subject):
        response = await client.put(
            f"/api/v1/privacy/subjects/{subject.id}/consent",
            json={"data_processing": False},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "consent_required"


class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_policy_table(self, client):
        response = await client.get("/api/v1/admin/retention/policies")
        assert response.status_code == 200
        assert response.json()["policy_count"] == 14

    @pytest.mark.asyncio
    async def test_run_single_policy(self, client, subject):
        response = await client.post("/api/v1/admin/retention/policies/session_data/run")
        assert response.status_code == 200
        assert response.json()["cleaned_count"] == 1

    @pytest.mark.asyncio
    async def test_run_unknown_policy(self, client):
        response = await client.post("/api/v1/admin/retention/policies/nope/run")
        assert response.status_code == 404
        assert response.json()["error"] == "unknown_policy"

    @pytest.mark.asyncio
    async def test_sweep_and_due_deletions(self, client, subject):
        sweep = await client.post("/api/v1/admin/retention/sweep")
        assert sweep.status_code == 200
        assert sweep.json()["policies_executed"] == 14

        due = await client.post("/api/v1/admin/deletions/run-due")
        assert due.status_code == 200
        assert due.json()["errors"] == 0
