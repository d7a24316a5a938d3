from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import Field

from orbit_credits.core.atomic import utcnow
from orbit_credits.models.credit_pricing import ActionKind

TransactionType = Literal["monthly_refresh", "purchase", "spent", "refund"]


class CreditTransaction(Document):
    """Append-only ledger entry; balance_after == balance_before + amount."""
    user_id: PydanticObjectId
    type: TransactionType
    action: ActionKind | None = None
    amount: int  # negative for spends
    balance_before: int
    balance_after: int
    related_id: str | None = None  # opportunity id, application id, payment id
    description: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "credit_transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("related_id", 1)],
        ]
