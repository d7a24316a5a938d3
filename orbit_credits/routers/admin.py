from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from orbit_credits.core.audit import log_event
from orbit_credits.deps import parse_object_id, require_admin
from orbit_credits.models.credit_pricing import UNLIMITED_CREDITS
from orbit_credits.models.user import User
from orbit_credits.services import credits as credits_service
from orbit_credits.services import pricing as pricing_service

router = APIRouter()


class PricingUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    early_access: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)
    custom_cv: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)
    custom_cover_letter: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)
    internal_application: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)
    company_proposal: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)
    free_monthly_credits: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)
    student_premium_monthly_credits: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)
    student_pro_monthly_credits: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)
    company_basic_monthly_credits: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)
    company_premium_monthly_credits: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)
    company_pro_monthly_credits: int | None = Field(default=None, ge=0, le=UNLIMITED_CREDITS)


class CreditGrant(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    related_id: str | None = None
    description: str | None = None


class RefreshRequest(BaseModel):
    user_ids: list[str] | None = None


@router.get("/pricing")
async def admin_pricing(user: User = Depends(require_admin)):
    pricing = await pricing_service.get_pricing(fresh=True)
    return pricing_service.pricing_to_dict(pricing)


@router.put("/pricing")
async def admin_pricing_update(body: PricingUpdate, user: User = Depends(require_admin)):
    """Admin: edit costs/allowances. Other instances pick it up within the pricing cache TTL."""
    pricing = await pricing_service.update_pricing(body.model_dump(exclude_none=True), updated_by=str(user.id))
    return pricing_service.pricing_to_dict(pricing)


@router.post("/credits/refund")
async def admin_credits_refund(body: CreditGrant, user: User = Depends(require_admin)):
    target_id = parse_object_id(body.user_id, "user_id")
    entry, balance_after = await credits_service.refund(
        target_id, body.amount, related_id=body.related_id, description=body.description
    )
    await log_event(str(user.id), "credits_refunded", "user", str(target_id), {"amount": body.amount})
    return {"balance": balance_after, "transaction_id": str(entry.id)}


@router.post("/credits/purchase")
async def admin_credits_purchase(body: CreditGrant, user: User = Depends(require_admin)):
    """Billing callback / manual top-up."""
    target_id = parse_object_id(body.user_id, "user_id")
    entry, balance_after = await credits_service.purchase(
        target_id, body.amount, related_id=body.related_id, description=body.description
    )
    await log_event(str(user.id), "credits_purchased", "user", str(target_id), {"amount": body.amount})
    return {"balance": balance_after, "transaction_id": str(entry.id)}


@router.post("/credits/refresh")
async def admin_credits_refresh(body: RefreshRequest, user: User = Depends(require_admin)):
    """Admin: run the monthly refresh now for all due users, or the due subset of user_ids."""
    user_ids = [parse_object_id(u, "user_id") for u in body.user_ids] if body.user_ids is not None else None
    report = await credits_service.monthly_refresh(user_ids)
    await log_event(
        str(user.id),
        "monthly_refresh_run",
        "credits",
        None,
        {"refreshed_count": report["refreshed_count"], "total_found": report["total_found"]},
    )
    return report


@router.get("/credits/{user_id}/verify")
async def admin_credits_verify(user_id: str, user: User = Depends(require_admin)):
    """Admin: replay the user's ledger and compare with the stored balance."""
    return await credits_service.verify_ledger(parse_object_id(user_id, "user_id"))
