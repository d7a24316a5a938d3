from datetime import datetime
from typing import Literal, get_args

from beanie import Document, Indexed
from pydantic import Field

from orbit_credits.core.atomic import utcnow

SubscriptionPlan = Literal[
    "FREE",
    "STUDENT_PREMIUM",
    "STUDENT_PRO",
    "COMPANY_BASIC",
    "COMPANY_PREMIUM",
    "COMPANY_PRO",
]
PLANS: tuple[str, ...] = get_args(SubscriptionPlan)


class User(Document):
    """Subset of the platform user that the credit ledger and streak engine own."""
    email: Indexed(str, unique=True)
    name: str = ""
    role: str = "student"  # "student" | "company" | "admin"
    subscription_plan: SubscriptionPlan = "FREE"

    # Credit state; only changed through services.credits
    credits: int = Field(default=0, ge=0)
    lifetime_credits_used: int = Field(default=0, ge=0)
    credits_refresh_date: datetime | None = None  # next scheduled refresh

    # Streak state; last_streak_date is midnight UTC of the counted day
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    last_streak_date: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "users"
        indexes = [[("credits_refresh_date", 1)]]
