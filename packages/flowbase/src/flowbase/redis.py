"""
Redis client for the flow services.

The client is created lazily so importing a service never opens a connection.
"""

import functools
import logging

import redis

from flowbase.settings import get_settings

logger = logging.getLogger(__name__)


@functools.lru_cache()
def get_redis_client() -> redis.Redis:
    """Get Redis client for REDIS_URL (cached)."""
    return redis.from_url(get_settings().REDIS_URL, decode_responses=True)


def ensure_stream_group(
    client: redis.Redis,
    stream_name: str,
    group_name: str,
    start_id: str = "0",
) -> bool:
    """
    Create the consumer group (and the stream) unless it already exists.

    Returns:
        True if the group was created, False if it already existed
    """
    try:
        client.xgroup_create(stream_name, group_name, id=start_id, mkstream=True)
    except redis.ResponseError as e:
        if "BUSYGROUP" in str(e):
            return False
        raise
    logger.info(f"Created consumer group '{group_name}' for stream '{stream_name}'")
    return True
