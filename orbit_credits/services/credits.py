"""
Credit ledger: atomic spend/refund/purchase, monthly refresh, and the audit trail.

Every balance change is a single conditional update on the user document
(`find_one_and_update` guarded by the filter) followed by an append to
credit_transactions, both inside one atomic unit. The guard, not application
code, decides whether a spend fits the balance.
"""

import calendar
from datetime import datetime
from typing import Any, Awaitable, Callable

import pymongo
from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import In, Inc, Or, Set
from motor.motor_asyncio import AsyncIOMotorClientSession

from orbit_credits.core.atomic import atomic, utcnow
from orbit_credits.core.config import get_settings
from orbit_credits.core.exceptions import BadRequestError, InsufficientCreditsError, UserNotFoundError
from orbit_credits.core.logging import get_logger
from orbit_credits.models.credit_transaction import CreditTransaction
from orbit_credits.models.user import User
from orbit_credits.services import pricing as pricing_service

log = get_logger(__name__)

Session = AsyncIOMotorClientSession | None


async def _get_user(user_id: PydanticObjectId, session: Session = None) -> User:
    user = await User.get(user_id, session=session)
    if not user:
        raise UserNotFoundError(user_id)
    return user


async def _append_entry(
    entry: CreditTransaction,
    session: Session,
    undo: Callable[[], Awaitable[Any]],
) -> CreditTransaction:
    """Insert the ledger entry. Without a transaction, a failed insert reverts the balance write."""
    try:
        await entry.insert(session=session)
    except Exception:
        if session is None:
            log.exception("ledger_append_failed", user_id=str(entry.user_id), type=entry.type, amount=entry.amount)
            await undo()
        raise
    return entry


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise BadRequestError("Amount must be a positive integer", details={"amount": amount})


async def get_balance(user_id: PydanticObjectId) -> int:
    """Return current balance for user."""
    user = await _get_user(user_id)
    return user.credits


async def spend(
    user_id: PydanticObjectId,
    action: str,
    related_id: str | None = None,
    description: str | None = None,
    session: Session = None,
) -> tuple[CreditTransaction, int]:
    """
    Charge the configured cost of `action`. Returns (ledger_entry, balance_after).
    Raises InsufficientCreditsError when the balance is below the cost; nothing is written then.
    Pass `session` to join an outer atomic unit (the unlocker does).
    """
    cost = await pricing_service.get_cost(action)
    async with atomic(session) as s:
        updated = await User.find_one(User.id == user_id, User.credits >= cost, session=s).update(
            Inc({User.credits: -cost, User.lifetime_credits_used: cost}),
            Set({User.updated_at: utcnow()}),
            session=s,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if updated is None:
            user = await _get_user(user_id, session=s)
            log.info("credits_insufficient", user_id=str(user_id), action=action, required=cost, current=user.credits)
            raise InsufficientCreditsError(required=cost, current=user.credits)

        async def undo() -> None:
            await User.find_one(User.id == user_id).update(
                Inc({User.credits: cost, User.lifetime_credits_used: -cost})
            )

        entry = CreditTransaction(
            user_id=user_id,
            type="spent",
            action=action,
            amount=-cost,
            balance_before=updated.credits + cost,
            balance_after=updated.credits,
            related_id=related_id,
            description=description,
        )
        await _append_entry(entry, s, undo)
    log.info("credits_spent", user_id=str(user_id), action=action, cost=cost, balance_after=updated.credits)
    return entry, updated.credits


async def _credit(
    user_id: PydanticObjectId,
    amount: int,
    tx_type: str,
    related_id: str | None,
    description: str | None,
    session: Session,
) -> tuple[CreditTransaction, int]:
    _require_positive(amount)
    async with atomic(session) as s:
        updated = await User.find_one(User.id == user_id, session=s).update(
            Inc({User.credits: amount}),
            Set({User.updated_at: utcnow()}),
            session=s,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if updated is None:
            raise UserNotFoundError(user_id)

        async def undo() -> None:
            await User.find_one(User.id == user_id).update(Inc({User.credits: -amount}))

        entry = CreditTransaction(
            user_id=user_id,
            type=tx_type,
            amount=amount,
            balance_before=updated.credits - amount,
            balance_after=updated.credits,
            related_id=related_id,
            description=description,
        )
        await _append_entry(entry, s, undo)
    return entry, updated.credits


async def refund(
    user_id: PydanticObjectId,
    amount: int,
    related_id: str | None = None,
    description: str | None = None,
    session: Session = None,
) -> tuple[CreditTransaction, int]:
    """Give credits back. lifetime_credits_used is left as is."""
    entry, balance_after = await _credit(user_id, amount, "refund", related_id, description, session)
    log.info("credits_refunded", user_id=str(user_id), amount=amount, balance_after=balance_after)
    return entry, balance_after


async def purchase(
    user_id: PydanticObjectId,
    amount: int,
    related_id: str | None = None,
    description: str | None = None,
    session: Session = None,
) -> tuple[CreditTransaction, int]:
    """Top-up from the billing layer (related_id = payment id)."""
    entry, balance_after = await _credit(user_id, amount, "purchase", related_id, description, session)
    log.info("credits_purchased", user_id=str(user_id), amount=amount, balance_after=balance_after)
    return entry, balance_after


def add_one_month(dt: datetime) -> datetime:
    """Same day next month, clamped to the last day of shorter months."""
    year, month = (dt.year + 1, 1) if dt.month == 12 else (dt.year, dt.month + 1)
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def _due(now: datetime):
    return Or(User.credits_refresh_date == None, User.credits_refresh_date < now)


async def refresh_user(user_id: PydanticObjectId, now: datetime | None = None) -> dict | None:
    """
    Replace the balance with the plan allowance (no roll-over) if the user is due.
    Returns the result row, or None if the user is not (or no longer) due.
    """
    now = now or utcnow()
    user = await _get_user(user_id)
    plan = user.subscription_plan
    allowance = await pricing_service.get_allowance(plan)
    next_refresh = add_one_month(now)
    async with atomic() as s:
        # The due-guard in the filter makes overlapping refresh runs refresh a user once
        before = await User.find_one(User.id == user_id, _due(now), session=s).update(
            Set({
                User.credits: allowance,
                User.credits_refresh_date: next_refresh,
                User.updated_at: now,
            }),
            session=s,
            response_type=UpdateResponse.OLD_DOCUMENT,
        )
        if before is None:
            return None
        amount = allowance - before.credits

        async def undo() -> None:
            await User.find_one(User.id == user_id).update(
                Inc({User.credits: -amount}),
                Set({User.credits_refresh_date: before.credits_refresh_date}),
            )

        entry = CreditTransaction(
            user_id=user_id,
            type="monthly_refresh",
            amount=amount,
            balance_before=before.credits,
            balance_after=allowance,
            description=f"Monthly credit refresh for {plan} plan",
        )
        await _append_entry(entry, s, undo)
    log.info(
        "credits_refreshed",
        user_id=str(user_id),
        plan=plan,
        old_credits=before.credits,
        new_credits=allowance,
        next_refresh=next_refresh.isoformat(),
    )
    return {
        "user_id": str(user_id),
        "plan": plan,
        "old_credits": before.credits,
        "new_credits": allowance,
        "next_refresh": next_refresh,
    }


async def monthly_refresh(
    user_ids: list[PydanticObjectId] | None = None,
    now: datetime | None = None,
    limit: int | None = None,
) -> dict:
    """
    Refresh every due user (or the due subset of `user_ids`). Each user is its own
    atomic unit; a failure is reported in its result row and does not stop the batch.
    Without `user_ids` one call takes at most `limit` (default REFRESH_BATCH_LIMIT) due users.
    """
    now = now or utcnow()
    filters = [_due(now)]
    if user_ids is not None:
        filters.append(In(User.id, list(user_ids)))
    query = User.find(*filters).sort([("_id", pymongo.ASCENDING)])
    if user_ids is None or limit is not None:
        # Open-ended runs are batched; an explicit id list is processed whole
        query = query.limit(limit or get_settings().refresh_batch_limit)
    due = await query.to_list()

    refreshed_count = 0
    results: list[dict] = []
    for user in due:
        try:
            row = await refresh_user(user.id, now=now)
        except Exception as e:
            log.exception("credits_refresh_failed", user_id=str(user.id))
            results.append({"user_id": str(user.id), "error": str(e)[:500] or type(e).__name__})
            continue
        if row is None:
            continue
        refreshed_count += 1
        results.append(row)
    log.info("monthly_refresh_done", total_found=len(due), refreshed_count=refreshed_count)
    return {"refreshed_count": refreshed_count, "total_found": len(due), "results": results}


async def list_transactions(
    user_id: PydanticObjectId,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CreditTransaction], int]:
    """Ledger entries for user, newest first, with total count."""
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    query = CreditTransaction.find(CreditTransaction.user_id == user_id)
    total = await query.count()
    entries = (
        await CreditTransaction.find(CreditTransaction.user_id == user_id)
        .sort([("created_at", pymongo.DESCENDING), ("_id", pymongo.DESCENDING)])
        .skip(offset)
        .limit(limit)
        .to_list()
    )
    return entries, total


async def replay_balance(user_id: PydanticObjectId) -> int:
    """Fold the user's ledger from zero."""
    entries = await CreditTransaction.find(CreditTransaction.user_id == user_id).to_list()
    return sum(e.amount for e in entries)


async def verify_ledger(user_id: PydanticObjectId) -> dict:
    """Check that the ledger reproduces the stored balance and every entry is self-consistent."""
    user = await _get_user(user_id)
    entries = (
        await CreditTransaction.find(CreditTransaction.user_id == user_id)
        .sort([("created_at", pymongo.ASCENDING), ("_id", pymongo.ASCENDING)])
        .to_list()
    )
    replayed = sum(e.amount for e in entries)
    bad_entries = [str(e.id) for e in entries if e.balance_after != e.balance_before + e.amount]
    return {
        "user_id": str(user_id),
        "balance": user.credits,
        "replayed_balance": replayed,
        "entries": len(entries),
        "invalid_entries": bad_entries,
        "consistent": replayed == user.credits and not bad_entries,
    }


def transaction_to_dict(e: CreditTransaction) -> dict:
    return {
        "id": str(e.id),
        "type": e.type,
        "action": e.action,
        "amount": e.amount,
        "balance_before": e.balance_before,
        "balance_after": e.balance_after,
        "related_id": e.related_id,
        "description": e.description,
        "created_at": e.created_at.isoformat(),
    }
