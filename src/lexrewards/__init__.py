"""Engagement engine: XP economy, streaks, leaderboards, challenges and wishlist alerts."""

__version__ = "0.1.0"
