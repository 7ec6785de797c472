"""Redis event publisher for user lifecycle events."""
import json
import logging
from datetime import datetime
from typing import Optional

import redis

from courier.core.config import settings

logger = logging.getLogger(__name__)

USER_EVENTS_CHANNEL = "user.events"

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """Lazy initialization of Redis client with connection pooling."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )
    return _redis_client


def _publish(event_type: str, **fields) -> bool:
    """Fire-and-forget: the calling request succeeds even if Redis is unavailable."""
    try:
        client = get_redis_client()
        event = {
            "event_type": event_type,
            "timestamp": datetime.now().isoformat(),
            **fields,
        }
        client.publish(USER_EVENTS_CHANNEL, json.dumps(event))
        return True
    except (redis.RedisError, OSError) as e:
        logger.warning(f"Failed to publish {event_type} event: {e}")
        return False


def publish_user_registered(user_id: str, username: str) -> bool:
    return _publish("user.registered", user_id=user_id, username=username)


def publish_user_deleted(user_id: str, deleted_by: str) -> bool:
    return _publish("user.deleted", user_id=user_id, deleted_by=deleted_by)
