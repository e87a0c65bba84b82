"""Data subject request handling: registry, verification, processing,
grace-period deletion and anonymization.

The wiring of all components lives in ``lifecycle.compliance.service``.
"""

from lifecycle.compliance.errors import (
    AnonymizationFailed,
    ConsentRequired,
    GracePeriodExpired,
    InvalidRequestType,
    LifecycleError,
    NotCancellable,
    PolicyExecutionFailed,
    TokenInvalidOrExpired,
)
from lifecycle.compliance.requests import DataSubjectRequest, RequestStatus, RequestType

__all__ = [
    "AnonymizationFailed",
    "ConsentRequired",
    "DataSubjectRequest",
    "GracePeriodExpired",
    "InvalidRequestType",
    "LifecycleError",
    "NotCancellable",
    "PolicyExecutionFailed",
    "RequestStatus",
    "RequestType",
    "TokenInvalidOrExpired",
]
