"""Shared FastAPI dependencies. The gateway in front of this service authenticates and passes the acting user."""

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import Header

from orbit_credits.core.exceptions import BadRequestError, ForbiddenError, UserNotFoundError
from orbit_credits.core.logging import bind_acting_user
from orbit_credits.models.user import User

USER_ID_HEADER = "X-User-Id"


def parse_object_id(value: str, field: str = "id") -> PydanticObjectId:
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError):
        raise BadRequestError(f"Invalid {field}", details={field: value})


async def get_current_user(x_user_id: str = Header(..., alias=USER_ID_HEADER)) -> User:
    """Dependency: load the acting user resolved upstream."""
    user_id = parse_object_id(x_user_id, "user_id")
    user = await User.get(user_id)
    if not user:
        raise UserNotFoundError(user_id)
    bind_acting_user(str(user.id))
    return user


async def require_admin(x_user_id: str = Header(..., alias=USER_ID_HEADER)) -> User:
    """Dependency: require acting user to have role admin."""
    user = await get_current_user(x_user_id)
    if getattr(user, "role", "student") != "admin":
        raise ForbiddenError("Admin only")
    return user
