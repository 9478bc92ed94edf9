"""Shared FastAPI dependencies."""

from lexrewards.notifications.notifier import Notifier, QueueNotifier
from lexrewards.redis_client import get_arq_pool, get_redis


def get_notifier() -> Notifier:
    """Queue-backed notifier; degrades to log-and-drop when Redis is not up."""
    try:
        redis = get_redis()
    except RuntimeError:
        redis = None
    return QueueNotifier(get_arq_pool(), redis)
