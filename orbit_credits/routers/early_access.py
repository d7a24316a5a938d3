from fastapi import APIRouter, Depends
from pydantic import BaseModel

from orbit_credits.deps import get_current_user
from orbit_credits.models.early_access_unlock import OpportunityType
from orbit_credits.models.user import User
from orbit_credits.services import early_access as early_access_service

router = APIRouter()


class UnlockRequest(BaseModel):
    opportunity_id: str
    opportunity_type: OpportunityType = "external"


@router.post("/unlock")
async def early_access_unlock(body: UnlockRequest, user: User = Depends(get_current_user)):
    """Unlock early access (idempotent: repeats return already_unlocked and charge nothing)."""
    return await early_access_service.unlock(user.id, body.opportunity_id, body.opportunity_type)


@router.get("/unlocks")
async def early_access_unlocks(user: User = Depends(get_current_user)):
    unlocks = await early_access_service.list_unlocked(user.id)
    return {
        "unlocks": [
            {
                "opportunity_id": u.opportunity_id,
                "opportunity_type": u.opportunity_type,
                "used_credit": u.used_credit,
                "created_at": u.created_at.isoformat(),
            }
            for u in unlocks
        ]
    }
