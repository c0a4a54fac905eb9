"""Redis Streams transport: producer, consumer, stream-backed bus and wake queue."""

from flows_core.streams.bus import StreamEventBus
from flows_core.streams.consumer import FlowStreamConsumer
from flows_core.streams.groups import ensure_flow_streams, events_streams
from flows_core.streams.producer import FlowStreamProducer, StreamFailureReporter
from flows_core.streams.wake_queue import RedisWakeQueue

__all__ = [
    "StreamEventBus",
    "FlowStreamConsumer",
    "FlowStreamProducer",
    "StreamFailureReporter",
    "RedisWakeQueue",
    "ensure_flow_streams",
    "events_streams",
]
