"""Early-access unlock: idempotency, fee waiver, insufficient credits."""

import asyncio

import pytest

from orbit_credits.core.config import get_settings
from orbit_credits.core.exceptions import BadRequestError, InsufficientCreditsError, PersistenceConflictError
from orbit_credits.models.credit_transaction import CreditTransaction
from orbit_credits.models.early_access_unlock import EarlyAccessUnlock
from orbit_credits.models.user import User
from orbit_credits.services import credits as credits_service
from orbit_credits.services import early_access as early_access_service

pytestmark = [pytest.mark.asyncio, pytest.mark.usefixtures("db")]


async def _unlock_count(user_id):
    return await EarlyAccessUnlock.find(EarlyAccessUnlock.user_id == user_id).count()


async def _spent_entries(user_id):
    return await CreditTransaction.find(
        CreditTransaction.user_id == user_id,
        CreditTransaction.type == "spent",
    ).to_list()


async def test_unlock_charges_once(make_user):
    user = await make_user(credits=20)
    result = await early_access_service.unlock(user.id, "opp-1", "project")
    assert result == {"already_unlocked": False, "credits_spent": 7, "used_credit": True, "balance_after": 13}
    [entry] = await _spent_entries(user.id)
    assert entry.action == "EARLY_ACCESS"
    assert entry.related_id == "opp-1"
    record = await EarlyAccessUnlock.find_one(EarlyAccessUnlock.user_id == user.id)
    assert record.opportunity_type == "project"
    assert record.used_credit is True


async def test_repeat_unlock_is_free(make_user):
    user = await make_user(credits=20)
    await early_access_service.unlock(user.id, "opp-1")
    again = await early_access_service.unlock(user.id, "opp-1")
    assert again == {"already_unlocked": True, "credits_spent": 0, "used_credit": False, "balance_after": None}
    assert (await User.get(user.id)).credits == 13
    assert await _unlock_count(user.id) == 1
    assert len(await _spent_entries(user.id)) == 1


async def test_concurrent_unlocks_charge_once(make_user):
    user = await make_user(credits=20)
    results = await asyncio.gather(
        early_access_service.unlock(user.id, "opp-1"),
        early_access_service.unlock(user.id, "opp-1"),
    )
    assert sorted(r["already_unlocked"] for r in results) == [False, True]
    assert (await User.get(user.id)).credits == 13
    assert await _unlock_count(user.id) == 1
    assert len(await _spent_entries(user.id)) == 1


async def test_unlocks_are_per_opportunity(make_user):
    user = await make_user(credits=20)
    await early_access_service.unlock(user.id, "opp-1")
    result = await early_access_service.unlock(user.id, "opp-2")
    assert result["already_unlocked"] is False
    assert result["balance_after"] == 6
    assert await _unlock_count(user.id) == 2


async def test_fee_waived_plan_unlocks_without_charge(make_user):
    user = await make_user(credits=4, subscription_plan="STUDENT_PRO")
    result = await early_access_service.unlock(user.id, "opp-1")
    assert result == {"already_unlocked": False, "credits_spent": 0, "used_credit": False, "balance_after": 4}
    assert await _spent_entries(user.id) == []
    record = await EarlyAccessUnlock.find_one(EarlyAccessUnlock.user_id == user.id)
    assert record.used_credit is False


async def test_insufficient_credits_leaves_no_unlock(make_user):
    user = await make_user(credits=6)
    with pytest.raises(InsufficientCreditsError) as exc:
        await early_access_service.unlock(user.id, "opp-1")
    assert exc.value.details == {"required": 7, "current": 6}
    assert await _unlock_count(user.id) == 0
    assert (await User.get(user.id)).credits == 6
    assert await early_access_service.is_unlocked(user.id, "opp-1") is False


async def test_refund_then_unlock(make_user):
    user = await make_user(credits=0, subscription_plan="FREE")
    with pytest.raises(InsufficientCreditsError) as exc:
        await early_access_service.unlock(user.id, "opp-1")
    assert exc.value.required == 7
    assert exc.value.current == 0

    await credits_service.refund(user.id, 7, description="Goodwill")
    result = await early_access_service.unlock(user.id, "opp-1")
    assert result["already_unlocked"] is False
    assert result["balance_after"] == 0
    assert await _unlock_count(user.id) == 1
    assert await credits_service.replay_balance(user.id) == 0


@pytest.mark.parametrize(
    "opportunity_id, opportunity_type",
    [("", "external"), ("   ", "project"), ("opp-1", "internship")],
)
async def test_unlock_rejects_bad_input(make_user, opportunity_id, opportunity_type):
    user = await make_user(credits=20)
    with pytest.raises(BadRequestError):
        await early_access_service.unlock(user.id, opportunity_id, opportunity_type)
    assert (await User.get(user.id)).credits == 20


async def test_is_unlocked_and_list(make_user):
    user = await make_user(credits=30)
    other = await make_user(credits=30)
    await early_access_service.unlock(user.id, "opp-1")
    await early_access_service.unlock(user.id, "opp-2", "project")
    assert await early_access_service.is_unlocked(user.id, "opp-1") is True
    assert await early_access_service.is_unlocked(other.id, "opp-1") is False
    unlocks = await early_access_service.list_unlocked(user.id)
    assert [u.opportunity_id for u in unlocks] == ["opp-1", "opp-2"]
    assert await early_access_service.list_unlocked(other.id) == []


@pytest.fixture
def slow_spend(monkeypatch):
    """Charge lands 10 ms after the claim is inserted."""
    real_spend = credits_service.spend

    async def delayed(*args, **kwargs):
        await asyncio.sleep(0.01)
        return await real_spend(*args, **kwargs)

    monkeypatch.setattr(credits_service, "spend", delayed)


@pytest.fixture
def no_retry_delay(monkeypatch):
    monkeypatch.setenv("UNLOCK_RETRY_DELAY_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.mark.usefixtures("slow_spend")
async def test_concurrent_unlocks_without_credits_all_fail(make_user):
    user = await make_user(credits=0)
    results = await asyncio.gather(
        early_access_service.unlock(user.id, "opp-1"),
        early_access_service.unlock(user.id, "opp-1"),
        return_exceptions=True,
    )
    assert all(isinstance(r, InsufficientCreditsError) for r in results)
    assert await _unlock_count(user.id) == 0
    assert await early_access_service.is_unlocked(user.id, "opp-1") is False


@pytest.mark.usefixtures("slow_spend")
async def test_concurrent_unlock_waits_for_pending_claim(make_user):
    user = await make_user(credits=20)
    results = await asyncio.gather(
        early_access_service.unlock(user.id, "opp-1"),
        early_access_service.unlock(user.id, "opp-1"),
    )
    assert sorted(r["already_unlocked"] for r in results) == [False, True]
    assert (await User.get(user.id)).credits == 13
    assert len(await _spent_entries(user.id)) == 1
    record = await EarlyAccessUnlock.find_one(EarlyAccessUnlock.user_id == user.id)
    assert record.status == "settled"


@pytest.mark.usefixtures("no_retry_delay")
async def test_pending_claim_is_not_unlocked(make_user):
    user = await make_user(credits=20)
    await EarlyAccessUnlock(user_id=user.id, opportunity_id="opp-1", used_credit=True, status="pending").insert()
    assert await early_access_service.is_unlocked(user.id, "opp-1") is False
    assert await early_access_service.list_unlocked(user.id) == []
    with pytest.raises(PersistenceConflictError):
        await early_access_service.unlock(user.id, "opp-1")
    assert (await User.get(user.id)).credits == 20


@pytest.mark.usefixtures("no_retry_delay")
async def test_write_conflict_falls_back_to_already_unlocked(make_user, monkeypatch):
    user = await make_user(credits=20)

    async def conflicting(record, waived, balance):
        # The other transaction commits its claim while this one aborts
        await EarlyAccessUnlock(user_id=record.user_id, opportunity_id=record.opportunity_id, used_credit=True).insert()
        raise PersistenceConflictError()

    monkeypatch.setattr(early_access_service, "_claim_and_charge", conflicting)
    result = await early_access_service.unlock(user.id, "opp-1")
    assert result["already_unlocked"] is True
    assert (await User.get(user.id)).credits == 20


@pytest.mark.usefixtures("no_retry_delay")
async def test_persistent_write_conflict_is_raised(make_user, monkeypatch):
    user = await make_user(credits=20)
    calls = []

    async def conflicting(record, waived, balance):
        calls.append(record.opportunity_id)
        raise PersistenceConflictError()

    monkeypatch.setattr(early_access_service, "_claim_and_charge", conflicting)
    with pytest.raises(PersistenceConflictError):
        await early_access_service.unlock(user.id, "opp-1")
    assert len(calls) == get_settings().unlock_max_attempts


async def test_failed_settle_refunds_and_releases_claim(make_user, monkeypatch):
    user = await make_user(credits=20)

    async def broken_set(self, *args, **kwargs):
        raise RuntimeError("write failed")

    monkeypatch.setattr(EarlyAccessUnlock, "set", broken_set)
    with pytest.raises(RuntimeError):
        await early_access_service.unlock(user.id, "opp-1")
    assert (await User.get(user.id)).credits == 20
    assert await _unlock_count(user.id) == 0
    assert await credits_service.replay_balance(user.id) == 0
    report = await credits_service.verify_ledger(user.id)
    assert report["invalid_entries"] == []


async def test_opportunity_types_follow_model():
    assert early_access_service.OPPORTUNITY_TYPES == ("project", "external")
