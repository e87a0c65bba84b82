"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate. The order of imports matters for foreign
key resolution.
"""

from lifecycle.models.user import User, UserSettings
from lifecycle.models.audit import AuditRecord
from lifecycle.models.billing import BillingRecord, UsageRecord
from lifecycle.models.booking import Booking, BookingStatus
from lifecycle.models.data_subject_request import DataSubjectRequestRecord
from lifecycle.models.integration import CalendarIntegration
from lifecycle.models.notification import Notification
from lifecycle.models.session import RevokedToken, SessionRecord

__all__ = [
    "AuditRecord",
    "BillingRecord",
    "Booking",
    "BookingStatus",
    "CalendarIntegration",
    "DataSubjectRequestRecord",
    "Notification",
    "RevokedToken",
    "SessionRecord",
    "UsageRecord",
    "User",
    "UserSettings",
]
