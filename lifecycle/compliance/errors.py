"""Error kinds raised by the data lifecycle engine.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API layer should answer with. Batch operations (due deletions, the
retention sweep) never let these escape per item; they count and audit them.
"""

from __future__ import annotations

from typing import Any


class LifecycleError(Exception):
    """Base class for all engine errors."""

    code: str = "lifecycle_error"
    status_code: int = 400

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class InvalidRequestType(LifecycleError):
    code = "invalid_request_type"
    status_code = 422


class TokenInvalidOrExpired(LifecycleError):
    code = "token_invalid_or_expired"
    status_code = 400


class ConsentRequired(LifecycleError):
    code = "consent_required"
    status_code = 409


class GracePeriodExpired(LifecycleError):
    code = "grace_period_expired"
    status_code = 409


class NotCancellable(LifecycleError):
    code = "not_cancellable"
    status_code = 409


class AnonymizationFailed(LifecycleError):
    code = "anonymization_failed"
    status_code = 500


class PolicyExecutionFailed(LifecycleError):
    code = "policy_execution_failed"
    status_code = 500


class ExportFailed(LifecycleError):
    code = "export_failed"
    status_code = 500


class InvalidTransition(LifecycleError):
    """An attempted status change that is not an edge of the state graph."""

    code = "invalid_transition"
    status_code = 409


class RequestNotFound(LifecycleError):
    code = "request_not_found"
    status_code = 404


class SubjectNotFound(LifecycleError):
    code = "subject_not_found"
    status_code = 404


class UnknownPolicy(LifecycleError):
    code = "unknown_policy"
    status_code = 404


class ArtifactNotFound(LifecycleError):
    """Missing artifact, or a retrieval reference that is tampered or expired."""

    code = "artifact_not_found"
    status_code = 404


class UnknownConsent(LifecycleError):
    code = "unknown_consent"
    status_code = 422
