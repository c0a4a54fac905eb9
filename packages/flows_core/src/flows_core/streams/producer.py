"""
Flow Stream Producer

Publishes bus envelopes and failure records to Redis Streams.
"""

import json
import logging
from typing import Any

import redis

from flows_core.contracts.envelope import BusEnvelope, json_default, utcnow
from flows_core.engine.reporting import FailureReporter
from flows_core.engine.state import FlowInstance
from flows_core.streams.groups import events_stream_name, shard_for

logger = logging.getLogger(__name__)


class FlowStreamProducer:
    """Producer for publishing flow engine envelopes to Redis Streams."""

    def __init__(
        self,
        redis_client: redis.Redis,
        events_stream: str = "flows:events",
        failures_stream: str = "flows:failures",
        shards: int = 1,
        max_len: int = 100000,
    ):
        self.redis = redis_client
        self.events_stream = events_stream
        self.failures_stream = failures_stream
        self.shards = shards
        self.max_len = max_len

    @classmethod
    def from_settings(cls, redis_client: redis.Redis, settings) -> "FlowStreamProducer":
        return cls(
            redis_client,
            events_stream=settings.EVENTS_STREAM,
            failures_stream=settings.FAILURES_STREAM,
            shards=settings.STREAM_SHARDS,
            max_len=settings.STREAM_MAX_LEN,
        )

    def stream_for(self, envelope: BusEnvelope) -> str:
        shard = shard_for(envelope.contact_id, self.shards)
        return events_stream_name(self.events_stream, shard, self.shards)

    def publish(self, envelope: BusEnvelope) -> str:
        """
        Publish an envelope to its contact's shard.

        Returns:
            Stream message ID
        """
        return self._publish(self.stream_for(envelope), envelope.to_stream_data(), envelope.kind.value)

    def publish_failure(self, instance: FlowInstance, reason: str) -> str:
        """
        Publish a failed instance to the failures stream (the DLQ).

        Returns:
            Stream message ID
        """
        data = {
            "instance_id": instance.instance_id,
            "flow_id": instance.flow_id,
            "contact_id": instance.contact_id,
            "reason": reason,
            "attempts": str(instance.attempts),
            "failed_at": (instance.finished_at or utcnow()).isoformat(),
            "instance": json.dumps(instance.status_view(), default=json_default),
        }
        return self._publish(self.failures_stream, data, "failure")

    def _publish(self, stream_name: str, data: dict[str, Any], kind: str) -> str:
        msg_id = self.redis.xadd(
            stream_name,
            data,
            maxlen=self.max_len,
            approximate=True,
        )

        logger.debug(
            f"Published to {stream_name}",
            extra={"stream": stream_name, "kind": kind, "msg_id": msg_id},
        )

        return msg_id


class StreamFailureReporter(FailureReporter):
    """Sends failed instances to the failures stream for operators to inspect."""

    def __init__(self, producer: FlowStreamProducer):
        self.producer = producer

    def report(self, instance: FlowInstance, reason: str) -> None:
        self.producer.publish_failure(instance, reason)
