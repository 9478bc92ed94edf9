"""Domain exceptions raised by the engagement services.

The HTTP layer maps ``status_code`` onto the response; workers log and
count them like any other per-user failure.
"""

from __future__ import annotations

from typing import Any


class GamificationError(Exception):
    """Base class for expected, caller-visible failures."""

    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "error": self.__class__.__name__, **self.context}


class UserNotFoundError(GamificationError):
    status_code = 404


class InvalidActivityError(GamificationError):
    pass


class InsufficientXPError(GamificationError):
    pass


class RedemptionError(GamificationError):
    pass


class NoFreezeTokensError(GamificationError):
    status_code = 409


class WishlistItemNotFoundError(GamificationError):
    status_code = 404


class InvalidPurchaseError(GamificationError):
    pass


class ChallengeNotFoundError(GamificationError):
    status_code = 404
