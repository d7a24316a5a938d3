"""Streak engine: day-boundary transitions, idempotent daily update, racing writers."""

from datetime import date, datetime

import pytest

from orbit_credits.core.exceptions import UserNotFoundError
from orbit_credits.models.activity_event import ActivityEvent
from orbit_credits.models.user import User
from orbit_credits.services import streaks as streaks_service

pytestmark = [pytest.mark.asyncio, pytest.mark.usefixtures("db")]

TODAY = date(2026, 3, 10)
YESTERDAY = datetime(2026, 3, 9)


async def _apply(user, at=datetime(2026, 3, 10, 14, 0), source="tracked_board"):
    await ActivityEvent(user_id=user.id, source=source, opportunity_id="opp-1", occurred_at=at).insert()


async def test_streak_continues_from_yesterday(make_user):
    user = await make_user(current_streak=3, longest_streak=5, last_streak_date=YESTERDAY)
    await _apply(user)
    result = await streaks_service.update_streak(user.id, today=TODAY)
    assert result == {
        "success": True,
        "message": "4 day streak!",
        "streak": 4,
        "longest_streak": 5,
        "is_new_record": False,
        "already_updated": False,
    }
    stored = await User.get(user.id)
    assert stored.current_streak == 4
    assert stored.last_streak_date == datetime(2026, 3, 10)


async def test_streak_resets_after_gap(make_user):
    user = await make_user(current_streak=10, longest_streak=10, last_streak_date=datetime(2026, 3, 5))
    await _apply(user)
    result = await streaks_service.update_streak(user.id, today=TODAY)
    assert result["streak"] == 1
    assert result["longest_streak"] == 10
    stored = await User.get(user.id)
    assert stored.current_streak == 1
    assert stored.longest_streak == 10


async def test_first_ever_activity(make_user):
    user = await make_user()
    await _apply(user)
    result = await streaks_service.update_streak(user.id, today=TODAY)
    assert result["streak"] == 1
    assert result["longest_streak"] == 1
    assert result["is_new_record"] is False


async def test_new_record_flag(make_user):
    user = await make_user(current_streak=3, longest_streak=3, last_streak_date=YESTERDAY)
    await _apply(user)
    result = await streaks_service.update_streak(user.id, today=TODAY)
    assert result["streak"] == 4
    assert result["longest_streak"] == 4
    assert result["is_new_record"] is True


async def test_no_activity_leaves_streak_unchanged(make_user):
    user = await make_user(current_streak=6, longest_streak=6, last_streak_date=YESTERDAY)
    # Activity outside today's UTC window does not count
    await _apply(user, at=datetime(2026, 3, 9, 23, 59))
    await _apply(user, at=datetime(2026, 3, 11, 0, 0))
    result = await streaks_service.update_streak(user.id, today=TODAY)
    assert result == {
        "success": False,
        "message": streaks_service.NO_ACTIVITY_MESSAGE,
        "streak": 3,
    }
    stored = await User.get(user.id)
    assert stored.current_streak == 6
    assert stored.last_streak_date == YESTERDAY


async def test_same_day_update_is_idempotent(make_user):
    user = await make_user(current_streak=3, longest_streak=3, last_streak_date=YESTERDAY)
    await _apply(user)
    first = await streaks_service.update_streak(user.id, today=TODAY)
    await _apply(user, at=datetime(2026, 3, 10, 18, 0))
    second = await streaks_service.update_streak(user.id, today=TODAY)
    assert first["streak"] == 4
    assert first["is_new_record"] is True
    assert second["success"] is True
    assert second["already_updated"] is True
    assert second["streak"] == 4
    assert second["is_new_record"] is False
    assert (await User.get(user.id)).current_streak == 4


async def test_manual_external_applications_count(make_user):
    user = await make_user()
    await _apply(user, source="manual_external")
    result = await streaks_service.update_streak(user.id, today=TODAY)
    assert result["success"] is True


async def test_custom_sources_are_summed(make_user):
    user = await make_user()
    seen = []

    async def board(user_id, start, end):
        seen.append((start, end))
        return 0

    async def external(user_id, start, end):
        return 2

    result = await streaks_service.update_streak(user.id, today=TODAY, sources=[board, external])
    assert result["streak"] == 1
    assert seen == [(datetime(2026, 3, 10), datetime(2026, 3, 11))]
    assert await streaks_service.count_qualifying_activity(user.id, TODAY, [board, external]) == 2


async def test_racing_writer_is_not_double_counted(make_user):
    user = await make_user(current_streak=3, longest_streak=3, last_streak_date=YESTERDAY)

    async def racing_source(user_id, start, end):
        # Another request counts today while this one is still reading activity
        await User.find_one(User.id == user_id).update(
            {"$set": {"current_streak": 4, "longest_streak": 4, "last_streak_date": start}}
        )
        return 1

    result = await streaks_service.update_streak(user.id, today=TODAY, sources=[racing_source])
    assert result["already_updated"] is True
    assert result["streak"] == 4
    stored = await User.get(user.id)
    assert stored.current_streak == 4
    assert stored.longest_streak == 4


async def test_update_streak_unknown_user():
    from beanie import PydanticObjectId
    with pytest.raises(UserNotFoundError):
        await streaks_service.update_streak(PydanticObjectId(), today=TODAY)


async def test_get_streak_reports_visual_decay(make_user):
    user = await make_user(current_streak=8, longest_streak=12, last_streak_date=datetime(2026, 3, 8))
    result = await streaks_service.get_streak(user.id, today=TODAY)
    assert result == {
        "current_streak": 8,
        "longest_streak": 12,
        "last_streak_date": "2026-03-08",
        "visual_streak": 2,
    }


async def test_get_streak_never_active(make_user):
    user = await make_user()
    result = await streaks_service.get_streak(user.id, today=TODAY)
    assert result["last_streak_date"] is None
    assert result["visual_streak"] == 0


async def test_get_visual_streak(make_user):
    user = await make_user(current_streak=6, longest_streak=6, last_streak_date=YESTERDAY)
    assert await streaks_service.get_visual_streak(user.id, today=TODAY) == 3
    assert await streaks_service.get_visual_streak(user.id, today=date(2026, 3, 9)) == 6
