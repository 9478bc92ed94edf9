"""Notification request payload shared by emitters and the delivery worker."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

VALID_TYPES = {"gamification", "competition", "commerce", "system"}


class NotificationRequest(BaseModel):
    user_id: int
    type: str = "gamification"
    subtype: str
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    # Same key => delivered at most once (used as the arq job id and a unique column)
    dedupe_key: str | None = None
