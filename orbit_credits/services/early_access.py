"""Early-access unlocks: charge at most once per (user, opportunity)."""

import asyncio
from typing import get_args

import pymongo
from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from orbit_credits.core.atomic import atomic
from orbit_credits.core.config import get_settings
from orbit_credits.core.exceptions import BadRequestError, PersistenceConflictError, UserNotFoundError
from orbit_credits.core.logging import get_logger
from orbit_credits.models.early_access_unlock import EarlyAccessUnlock, OpportunityType
from orbit_credits.models.user import User
from orbit_credits.services import credits as credits_service
from orbit_credits.services import pricing as pricing_service

log = get_logger(__name__)

OPPORTUNITY_TYPES: tuple[str, ...] = get_args(OpportunityType)


def _already_unlocked() -> dict:
    return {"already_unlocked": True, "credits_spent": 0, "used_credit": False, "balance_after": None}


def _settled_filters(user_id: PydanticObjectId):
    # Rows written before claims had a status count as settled
    return EarlyAccessUnlock.user_id == user_id, EarlyAccessUnlock.status != "pending"


async def _find_unlock(user_id: PydanticObjectId, opportunity_id: str) -> EarlyAccessUnlock | None:
    return await EarlyAccessUnlock.find_one(
        EarlyAccessUnlock.user_id == user_id,
        EarlyAccessUnlock.opportunity_id == opportunity_id,
    )


async def _claim_and_charge(record: EarlyAccessUnlock, waived: bool, balance: int) -> tuple[int, int]:
    """
    Insert the claim as pending, charge, then settle it, all in one atomic unit.
    Returns (credits_spent, balance_after).
    """
    credits_spent, balance_after = 0, balance
    async with atomic() as s:
        await record.insert(session=s)
        try:
            if not waived:
                entry, balance_after = await credits_service.spend(
                    record.user_id,
                    "EARLY_ACCESS",
                    related_id=record.opportunity_id,
                    description=f"Unlocked early access to {record.opportunity_type} opportunity",
                    session=s,
                )
                credits_spent = -entry.amount
            await record.set({EarlyAccessUnlock.status: "settled"}, session=s)
        except Exception:
            if s is None:
                # No transaction to roll back: give back the charge and release the claim
                if credits_spent:
                    await credits_service.refund(
                        record.user_id,
                        credits_spent,
                        related_id=record.opportunity_id,
                        description="Early access unlock rolled back",
                    )
                await record.delete()
            raise
    return credits_spent, balance_after


async def unlock(user_id: PydanticObjectId, opportunity_id: str, opportunity_type: str = "external") -> dict:
    """
    Unlock early access to an opportunity, charging EARLY_ACCESS credits unless the plan waives it.
    Safe to repeat: once a settled unlock exists every call returns already_unlocked without
    touching the ledger.

    The claim is inserted as pending and settled in the same atomic unit as the charge; the unique
    (user_id, opportunity_id) index lets one of several racing calls hold the claim. The others
    wait for it to settle (already_unlocked) or be released (they try again themselves), and raise
    PersistenceConflictError if it stays pending past UNLOCK_MAX_ATTEMPTS.
    InsufficientCreditsError propagates with nothing written.
    """
    opportunity_id = (opportunity_id or "").strip()
    if not opportunity_id:
        raise BadRequestError("Opportunity ID required")
    if opportunity_type not in OPPORTUNITY_TYPES:
        raise BadRequestError("Invalid opportunity type", details={"opportunity_type": opportunity_type})

    user = await User.get(user_id)
    if not user:
        raise UserNotFoundError(user_id)
    waived = pricing_service.is_fee_waived(user.subscription_plan)

    settings = get_settings()
    for attempt in range(max(1, settings.unlock_max_attempts)):
        if attempt:
            await asyncio.sleep(settings.unlock_retry_delay_seconds * attempt)
        existing = await _find_unlock(user_id, opportunity_id)
        if existing is not None:
            if existing.status != "pending":
                return _already_unlocked()
            log.info("early_access_unlock_pending", user_id=str(user_id), opportunity_id=opportunity_id)
            continue

        record = EarlyAccessUnlock(
            user_id=user_id,
            opportunity_id=opportunity_id,
            opportunity_type=opportunity_type,
            used_credit=not waived,
            status="pending",
        )
        try:
            credits_spent, balance_after = await _claim_and_charge(record, waived, user.credits)
        except (DuplicateKeyError, PersistenceConflictError):
            # Another request holds the claim (inside a transaction it shows up as a write conflict)
            log.info("early_access_unlock_raced", user_id=str(user_id), opportunity_id=opportunity_id)
            continue

        log.info(
            "early_access_unlocked",
            user_id=str(user_id),
            opportunity_id=opportunity_id,
            opportunity_type=opportunity_type,
            waived=waived,
            credits_spent=credits_spent,
        )
        return {
            "already_unlocked": False,
            "credits_spent": credits_spent,
            "used_credit": not waived,
            "balance_after": balance_after,
        }
    raise PersistenceConflictError("Early access unlock is still in progress, retry the request")


async def is_unlocked(user_id: PydanticObjectId, opportunity_id: str) -> bool:
    found = await EarlyAccessUnlock.find_one(
        *_settled_filters(user_id),
        EarlyAccessUnlock.opportunity_id == opportunity_id,
    )
    return found is not None


async def list_unlocked(user_id: PydanticObjectId) -> list[EarlyAccessUnlock]:
    """Settled unlocks for user, oldest first."""
    return (
        await EarlyAccessUnlock.find(*_settled_filters(user_id))
        .sort([("created_at", pymongo.ASCENDING), ("_id", pymongo.ASCENDING)])
        .to_list()
    )
