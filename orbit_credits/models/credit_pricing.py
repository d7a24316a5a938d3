"""Singleton pricing/allowance config, edited by admins."""

from datetime import datetime
from typing import Literal, get_args

from beanie import Document, Indexed
from pydantic import Field

from orbit_credits.core.atomic import utcnow

ActionKind = Literal[
    "EARLY_ACCESS",
    "CUSTOM_CV",
    "CUSTOM_COVER_LETTER",
    "INTERNAL_APPLICATION",
    "COMPANY_PROPOSAL",
]
ACTION_KINDS: tuple[str, ...] = get_args(ActionKind)

SINGLETON_KEY = "default"

# Large sentinel for unlimited-style tiers
UNLIMITED_CREDITS = 999_999


class CreditPricing(Document):
    key: Indexed(str, unique=True) = SINGLETON_KEY

    # Cost per action kind
    early_access: int = Field(default=7, ge=0)
    custom_cv: int = Field(default=5, ge=0)
    custom_cover_letter: int = Field(default=3, ge=0)
    internal_application: int = Field(default=5, ge=0)
    company_proposal: int = Field(default=7, ge=0)

    # Monthly allowance per subscription plan
    free_monthly_credits: int = Field(default=20, ge=0)
    student_premium_monthly_credits: int = Field(default=100, ge=0)
    student_pro_monthly_credits: int = Field(default=200, ge=0)
    company_basic_monthly_credits: int = Field(default=50, ge=0)
    company_premium_monthly_credits: int = Field(default=150, ge=0)
    company_pro_monthly_credits: int = Field(default=300, ge=0)

    updated_by: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "credit_pricing"

    def cost_of(self, action: str) -> int:
        return getattr(self, action.lower())

    def allowance_for(self, plan: str) -> int:
        return getattr(self, f"{plan.lower()}_monthly_credits")
