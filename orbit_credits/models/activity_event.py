"""Qualifying activity signals (applications), written by the tracking subsystems."""

from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import Field

from orbit_credits.core.atomic import utcnow


class ActivityEvent(Document):
    user_id: PydanticObjectId
    source: Literal["tracked_board", "manual_external"] = "tracked_board"
    opportunity_id: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "activity_events"
        indexes = [[("user_id", 1), ("occurred_at", 1)]]
