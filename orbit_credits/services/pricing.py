"""Pricing/allowance config: lazily materialised singleton with a bounded-staleness cache."""

import time
from typing import Any

from beanie import UpdateResponse
from beanie.operators import Set
from pymongo.errors import DuplicateKeyError

from orbit_credits.core.atomic import utcnow
from orbit_credits.core.audit import log_event
from orbit_credits.core.config import get_settings
from orbit_credits.core.exceptions import BadRequestError, UnknownActionKindError
from orbit_credits.core.logging import get_logger
from orbit_credits.models.credit_pricing import ACTION_KINDS, SINGLETON_KEY, UNLIMITED_CREDITS, CreditPricing
from orbit_credits.models.user import PLANS

log = get_logger(__name__)

# Plans whose early access is waived
FEE_WAIVED_PLANS = frozenset({"STUDENT_PRO"})

EDITABLE_FIELDS = frozenset(
    name for name in CreditPricing.model_fields if name not in ("id", "revision_id", "key", "updated_by", "updated_at")
)

_cache: tuple[float, CreditPricing] | None = None


def invalidate_cache() -> None:
    global _cache
    _cache = None


async def _load_or_create() -> CreditPricing:
    pricing = await CreditPricing.find_one(CreditPricing.key == SINGLETON_KEY)
    if pricing:
        return pricing
    try:
        pricing = CreditPricing()
        await pricing.insert()
        log.info("pricing_defaults_materialised")
        return pricing
    except DuplicateKeyError:
        # Another request materialised it first
        return await CreditPricing.find_one(CreditPricing.key == SINGLETON_KEY)


async def get_pricing(fresh: bool = False) -> CreditPricing:
    """Return the config. Cached reads are at most PRICING_CACHE_TTL_SECONDS stale."""
    global _cache
    ttl = get_settings().pricing_cache_ttl_seconds
    now = time.monotonic()
    if not fresh and _cache is not None and now - _cache[0] < ttl:
        return _cache[1]
    pricing = await _load_or_create()
    _cache = (now, pricing)
    return pricing


async def get_cost(action: str) -> int:
    if action not in ACTION_KINDS:
        raise UnknownActionKindError(action)
    pricing = await get_pricing()
    return pricing.cost_of(action)


async def get_allowance(plan: str | None) -> int:
    """Monthly allowance for plan; unknown or missing plan gets the FREE allowance."""
    pricing = await get_pricing()
    if plan not in PLANS:
        plan = "FREE"
    return pricing.allowance_for(plan)


def is_fee_waived(plan: str | None) -> bool:
    return plan in FEE_WAIVED_PLANS


async def update_pricing(changes: dict[str, Any], updated_by: str | None = None) -> CreditPricing:
    """
    Privileged writer. Values must be ints in [0, UNLIMITED_CREDITS]; 0 is a legal (free) cost and
    UNLIMITED_CREDITS is the allowance of an unlimited-style tier. Only the changed fields are
    written.
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise BadRequestError("Unknown pricing fields", details={"fields": sorted(unknown)})
    for name, value in changes.items():
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= UNLIMITED_CREDITS:
            raise BadRequestError(
                f"{name} must be an integer between 0 and {UNLIMITED_CREDITS}",
                details={"field": name},
            )
    await _load_or_create()
    before = await CreditPricing.find_one(CreditPricing.key == SINGLETON_KEY).update(
        Set({**changes, "updated_by": updated_by, "updated_at": utcnow()}),
        response_type=UpdateResponse.OLD_DOCUMENT,
    )
    invalidate_cache()
    pricing = await get_pricing(fresh=True)
    log.info("pricing_updated", updated_by=updated_by, changes=changes)
    await log_event(
        updated_by,
        "pricing_updated",
        "credit_pricing",
        str(pricing.id),
        {"before": {name: getattr(before, name) for name in changes}, "after": changes},
    )
    return pricing


def pricing_to_dict(pricing: CreditPricing) -> dict:
    return {
        "costs": {action: pricing.cost_of(action) for action in ACTION_KINDS},
        "monthly_allowances": {plan: pricing.allowance_for(plan) for plan in PLANS},
        "fee_waived_plans": sorted(FEE_WAIVED_PLANS),
        "updated_by": pricing.updated_by,
        "updated_at": pricing.updated_at.isoformat(),
    }
