from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from orbit_credits.deps import get_current_user
from orbit_credits.models.credit_pricing import ActionKind
from orbit_credits.models.user import User
from orbit_credits.services import credits as credits_service
from orbit_credits.services import pricing as pricing_service

router = APIRouter()


class SpendRequest(BaseModel):
    action: ActionKind
    related_id: str | None = None
    description: str | None = None


@router.get("/balance")
async def credits_balance(user: User = Depends(get_current_user)):
    """Return current credit balance and refresh info."""
    return {
        "balance": user.credits,
        "lifetime_credits_used": user.lifetime_credits_used,
        "credits_refresh_date": user.credits_refresh_date.isoformat() if user.credits_refresh_date else None,
        "subscription_plan": user.subscription_plan,
    }


@router.get("/ledger")
async def credits_ledger(
    user: User = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    entries, total = await credits_service.list_transactions(user.id, limit=limit, offset=offset)
    return {
        "entries": [credits_service.transaction_to_dict(e) for e in entries],
        "limit": limit,
        "offset": offset,
        "total": total,
    }


@router.get("/pricing")
async def credits_pricing():
    """Action costs and monthly allowances."""
    pricing = await pricing_service.get_pricing()
    return pricing_service.pricing_to_dict(pricing)


@router.post("/spend")
async def credits_spend(body: SpendRequest, user: User = Depends(get_current_user)):
    """Spend credits on an action. 402 with required/current when the balance is too low."""
    entry, balance_after = await credits_service.spend(
        user.id, body.action, related_id=body.related_id, description=body.description
    )
    return {"balance": balance_after, "spent": -entry.amount, "transaction_id": str(entry.id)}
