from fastapi import APIRouter, Depends

from orbit_credits.deps import get_current_user
from orbit_credits.models.user import User
from orbit_credits.services import streaks as streaks_service

router = APIRouter()


@router.get("")
async def streak_get(user: User = Depends(get_current_user)):
    """Current, longest and visual (decayed) streak."""
    return await streaks_service.get_streak(user.id)


@router.post("/update")
async def streak_update(user: User = Depends(get_current_user)):
    """Count today's applications and advance the streak (at most once per UTC day)."""
    return await streaks_service.update_streak(user.id)
