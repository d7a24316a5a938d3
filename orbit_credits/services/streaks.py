"""Daily application streak: day-boundary (UTC) counting with a compare-and-set update."""

import asyncio
import math
from datetime import date, datetime, time, timedelta
from typing import Awaitable, Callable, Iterable

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import Set

from orbit_credits.core.atomic import utcnow
from orbit_credits.core.config import get_settings
from orbit_credits.core.exceptions import PersistenceConflictError, UserNotFoundError
from orbit_credits.core.logging import get_logger
from orbit_credits.models.activity_event import ActivityEvent
from orbit_credits.models.user import User

log = get_logger(__name__)

NO_ACTIVITY_MESSAGE = "Apply to at least one opportunity today to grow your streak."
ALREADY_UPDATED_MESSAGE = "Streak already updated today!"

# (user_id, window_start, window_end) -> number of qualifying events in [start, end)
ActivitySource = Callable[[PydanticObjectId, datetime, datetime], Awaitable[int]]


async def count_activity_events(user_id: PydanticObjectId, start: datetime, end: datetime) -> int:
    """Applications recorded by the tracking subsystems (all sources) in the window."""
    return await ActivityEvent.find(
        ActivityEvent.user_id == user_id,
        ActivityEvent.occurred_at >= start,
        ActivityEvent.occurred_at < end,
    ).count()


DEFAULT_SOURCES: tuple[ActivitySource, ...] = (count_activity_events,)


def utc_today() -> date:
    return utcnow().date()


def day_window(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def _as_day(value: datetime | None) -> date | None:
    return value.date() if value is not None else None


def next_streak(current: int, last_day: date | None, today: date) -> int | None:
    """New current streak for activity today, or None when today was already counted."""
    yesterday = today - timedelta(days=1)
    if last_day is None or last_day == yesterday:
        return current + 1
    if last_day < yesterday:
        return 1
    # last_day is today (or ahead of our clock): nothing to add
    return None


def visual_streak(current: int, last_day: date | None, today: date) -> int:
    """Display value: halves for each day since the last counted day, 0 once below 1."""
    if last_day is None:
        return 0
    days_missed = (today - last_day).days
    if days_missed <= 0:
        return current
    value = math.floor(current * 0.5 ** days_missed)
    return value if value >= 1 else 0


async def count_qualifying_activity(
    user_id: PydanticObjectId,
    day: date,
    sources: Iterable[ActivitySource] = DEFAULT_SOURCES,
) -> int:
    start, end = day_window(day)
    counts = await asyncio.gather(*(source(user_id, start, end) for source in sources))
    return sum(counts)


async def _get_user(user_id: PydanticObjectId) -> User:
    user = await User.get(user_id)
    if not user:
        raise UserNotFoundError(user_id)
    return user


async def update_streak(
    user_id: PydanticObjectId,
    today: date | None = None,
    sources: Iterable[ActivitySource] | None = None,
) -> dict:
    """
    Count today's activity and advance the streak. Safe to call any number of times a day:
    the counter moves at most once per calendar day.

    No activity is not an error: the response has success=False, a message and the visual streak.
    """
    today = today or utc_today()
    user = await _get_user(user_id)
    activity = await count_qualifying_activity(user_id, today, sources or DEFAULT_SOURCES)
    if activity == 0:
        return {
            "success": False,
            "message": NO_ACTIVITY_MESSAGE,
            "streak": visual_streak(user.current_streak, _as_day(user.last_streak_date), today),
        }

    for _ in range(max(1, get_settings().streak_update_max_attempts)):
        new_streak = next_streak(user.current_streak, _as_day(user.last_streak_date), today)
        if new_streak is None:
            return {
                "success": True,
                "message": ALREADY_UPDATED_MESSAGE,
                "streak": user.current_streak,
                "longest_streak": user.longest_streak,
                "is_new_record": False,
                "already_updated": True,
            }
        new_longest = max(user.longest_streak, new_streak)
        # Compare-and-set against the state we computed from
        updated = await User.find_one(
            User.id == user_id,
            User.current_streak == user.current_streak,
            User.longest_streak == user.longest_streak,
            User.last_streak_date == user.last_streak_date,
        ).update(
            Set({
                User.current_streak: new_streak,
                User.longest_streak: new_longest,
                User.last_streak_date: datetime.combine(today, time.min),
                User.updated_at: utcnow(),
            }),
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if updated is not None:
            log.info("streak_updated", user_id=str(user_id), streak=new_streak, longest_streak=new_longest)
            return {
                "success": True,
                "message": f"{new_streak} day streak!",
                "streak": new_streak,
                "longest_streak": new_longest,
                "is_new_record": new_streak == new_longest and new_streak > 1,
                "already_updated": False,
            }
        log.info("streak_update_raced", user_id=str(user_id))
        user = await _get_user(user_id)
    raise PersistenceConflictError("Streak update kept conflicting, retry the request")


async def get_visual_streak(user_id: PydanticObjectId, today: date | None = None) -> int:
    user = await _get_user(user_id)
    return visual_streak(user.current_streak, _as_day(user.last_streak_date), today or utc_today())


async def get_streak(user_id: PydanticObjectId, today: date | None = None) -> dict:
    today = today or utc_today()
    user = await _get_user(user_id)
    last_day = _as_day(user.last_streak_date)
    return {
        "current_streak": user.current_streak,
        "longest_streak": user.longest_streak,
        "last_streak_date": last_day.isoformat() if last_day else None,
        "visual_streak": visual_streak(user.current_streak, last_day, today),
    }
