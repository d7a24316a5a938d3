from datetime import datetime
from typing import Literal

import pymongo
from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import IndexModel

from orbit_credits.core.atomic import utcnow

OpportunityType = Literal["project", "external"]
# pending: claimed, charge not landed yet; settled: paid for (or waived)
UnlockStatus = Literal["pending", "settled"]


class EarlyAccessUnlock(Document):
    """One per (user, opportunity). A settled row means the unlock was already paid for."""
    user_id: PydanticObjectId
    opportunity_id: str
    opportunity_type: OpportunityType = "external"
    used_credit: bool = False
    status: UnlockStatus = "settled"
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "early_access_unlocks"
        indexes = [
            IndexModel(
                [("user_id", pymongo.ASCENDING), ("opportunity_id", pymongo.ASCENDING)],
                unique=True,
                name="user_opportunity_unique",
            ),
        ]
