"""
Flow Stream Consumer

Consumes bus envelopes from Redis Streams using XREADGROUP.
"""

import logging
from typing import Any

import redis

from flows_core.contracts.envelope import BusEnvelope

logger = logging.getLogger(__name__)


class FlowStreamConsumer:
    """
    Consumer for reading flow envelopes from Redis Streams.

    Uses XREADGROUP for consumer group support and reliable delivery.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        consumer_name: str,
        group_name: str = "flows-engine",
    ):
        self.redis = redis_client
        self.consumer_name = consumer_name
        self.group_name = group_name

    def read(
        self,
        streams: list[str],
        count: int = 10,
        block_ms: int = 5000,
    ) -> list[tuple[str, str, BusEnvelope]]:
        """
        Read new messages from one or more streams.

        Returns:
            List of (stream_name, message_id, envelope) tuples
        """
        try:
            result = self.redis.xreadgroup(
                self.group_name,
                self.consumer_name,
                {stream: ">" for stream in streams},
                count=count,
                block=block_ms,
            )
        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                logger.error(f"Consumer group {self.group_name} does not exist for {streams}")
            raise

        if not result:
            return []

        messages = []
        for stream_name, entries in result:
            for msg_id, data in entries:
                try:
                    envelope = BusEnvelope.from_stream_message(msg_id, data)
                    messages.append((stream_name, msg_id, envelope))
                except Exception as e:
                    logger.error(f"Failed to parse message {msg_id}: {e}")
                    # ACK invalid messages to prevent blocking
                    self.ack(stream_name, msg_id)
        return messages

    def ack(self, stream_name: str, message_id: str) -> int:
        """
        Acknowledge a message as processed.

        Returns:
            Number of messages acknowledged (0 or 1)
        """
        return self.redis.xack(stream_name, self.group_name, message_id)

    def get_pending(
        self,
        stream_name: str,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[dict[str, Any]]:
        """Pending messages that have been idle at least ``min_idle_ms``."""
        try:
            pending_info = self.redis.xpending(stream_name, self.group_name)
            if not pending_info or pending_info.get("pending", 0) == 0:
                return []

            pending_range = self.redis.xpending_range(
                stream_name,
                self.group_name,
                min="-",
                max="+",
                count=count,
            )

            return [
                {
                    "message_id": entry["message_id"],
                    "consumer": entry["consumer"],
                    "idle_ms": entry["time_since_delivered"],
                    "delivery_count": entry["times_delivered"],
                }
                for entry in pending_range
                if entry.get("time_since_delivered", 0) >= min_idle_ms
            ]

        except redis.ResponseError:
            return []

    def reclaim_pending(
        self,
        stream_name: str,
        min_idle_ms: int = 60000,
        count: int = 100,
    ) -> list[tuple[str, BusEnvelope]]:
        """
        Claim idle pending messages from dead consumers.

        Returns:
            List of (message_id, envelope) tuples
        """
        pending = self.get_pending(stream_name, min_idle_ms, count)
        if not pending:
            return []

        try:
            result = self.redis.xclaim(
                stream_name,
                self.group_name,
                self.consumer_name,
                min_idle_ms,
                [p["message_id"] for p in pending],
            )
        except redis.ResponseError as e:
            logger.error(f"Failed to claim messages: {e}")
            return []

        messages = []
        for msg_id, data in result:
            try:
                messages.append((msg_id, BusEnvelope.from_stream_message(msg_id, data)))
            except Exception as e:
                logger.error(f"Failed to parse claimed message {msg_id}: {e}")
        return messages


def read_recent_failures(client: redis.Redis, stream_name: str, count: int = 20) -> list[dict[str, Any]]:
    """Newest entries of the failures stream, for operators."""
    try:
        entries = client.xrevrange(stream_name, count=count)
    except redis.ResponseError:
        return []
    return [{"stream_msg_id": msg_id, **data} for msg_id, data in entries]
