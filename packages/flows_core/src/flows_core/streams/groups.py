"""
Redis Stream Configuration

Stream names, consumer groups, sharding and setup utilities.

Envelopes for a contact always go to the same shard of the events stream
(crc32 of the contact id), so a worker that owns a shard sees that
contact's records in publish order. TRIGGER_FIRE envelopes have no contact
and go to shard 0.
"""

import logging
import zlib
from dataclasses import dataclass

import redis

from flowbase.redis import ensure_stream_group
from flowbase.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class StreamConfig:
    """Configuration for a stream and its consumer group."""

    stream_name: str
    group_name: str
    max_len: int = 100000
    start_id: str = "0"  # "0" = all history, "$" = new only


def shard_for(contact_id: str | None, shards: int) -> int:
    if not contact_id or shards <= 1:
        return 0
    return zlib.crc32(contact_id.encode("utf-8")) % shards


def events_stream_name(base: str, shard: int, shards: int) -> str:
    """Unsharded deployments keep the plain stream name."""
    if shards <= 1:
        return base
    return f"{base}:{shard}"


def events_streams(settings: Settings | None = None) -> list[str]:
    settings = settings or get_settings()
    return [
        events_stream_name(settings.EVENTS_STREAM, shard, settings.STREAM_SHARDS)
        for shard in range(settings.STREAM_SHARDS)
    ]


def stream_configs(settings: Settings | None = None) -> list[StreamConfig]:
    settings = settings or get_settings()
    configs = [
        StreamConfig(name, settings.CONSUMER_GROUP, max_len=settings.STREAM_MAX_LEN)
        for name in events_streams(settings)
    ]
    configs.append(
        StreamConfig(settings.FAILURES_STREAM, settings.CONSUMER_GROUP, max_len=settings.STREAM_MAX_LEN)
    )
    return configs


def ensure_flow_streams(client: redis.Redis, settings: Settings | None = None) -> None:
    """
    Ensure all flow engine streams and consumer groups exist.

    Should be called on startup by intake and worker services.
    """
    for config in stream_configs(settings):
        ensure_stream_group(client, config.stream_name, config.group_name, config.start_id)


def get_stream_info(client: redis.Redis, stream_name: str) -> dict:
    """Get information about a stream."""
    try:
        info = client.xinfo_stream(stream_name)
        return {
            "length": info.get("length", 0),
            "first_entry": info.get("first-entry"),
            "last_entry": info.get("last-entry"),
            "groups": client.xinfo_groups(stream_name),
        }
    except redis.ResponseError:
        return {"length": 0, "error": "Stream does not exist"}
