from orbit_credits.models.user import User
from orbit_credits.models.credit_pricing import CreditPricing
from orbit_credits.models.credit_transaction import CreditTransaction
from orbit_credits.models.early_access_unlock import EarlyAccessUnlock
from orbit_credits.models.activity_event import ActivityEvent
from orbit_credits.models.audit_log import AuditLog
from orbit_credits.models.failed_job import FailedJob

__all__ = [
    "User",
    "CreditPricing",
    "CreditTransaction",
    "EarlyAccessUnlock",
    "ActivityEvent",
    "AuditLog",
    "FailedJob",
]
