"""
Stream-backed event bus.

Processes that only feed the engine (the intake API) publish onto Redis
Streams instead of delivering locally; a worker consumes the streams and
hands each envelope to its own LocalEventBus.
"""

import logging

from flows_core.contracts.envelope import BusEnvelope
from flows_core.engine.bus import EventBus
from flows_core.streams.producer import FlowStreamProducer

logger = logging.getLogger(__name__)


class StreamEventBus(EventBus):
    def __init__(self, producer: FlowStreamProducer):
        super().__init__()
        self.producer = producer

    def publish(self, envelope: BusEnvelope) -> None:
        msg_id = self.producer.publish(envelope)
        logger.debug(
            f"Forwarded {envelope.kind} to stream",
            extra={"envelope_id": envelope.envelope_id, "msg_id": msg_id},
        )
