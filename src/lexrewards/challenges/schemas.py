"""Engagement events and challenge progress results."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class EngagementEvent(BaseModel):
    """An analytics event as tracked by the website."""

    event_name: str
    event_category: str | None = None
    user_id: int | None = None
    session_id: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime | None = None


class ChallengeEventResult(BaseModel):
    challenges_updated: list[int] = []
    challenges_completed: list[int] = []
