"""
Flows Worker - Redis Streams Consumer

Runs the flow engine. Intake processes (the HTTP API, the CLI) forward
events, property changes and trigger fires onto the events streams; this
worker reads them with XREADGROUP, hands them to its in-process engine and
ACKs once the engine has finished with them.

Features:
- XREADGROUP consumer over every events shard
- PEL reclaim for messages left by dead workers
- Delay scheduler ticking between reads
- Periodic refresh of flow definitions written by other processes
- Graceful shutdown
"""

import logging
import os
import signal
import socket
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from flowbase.logging import setup_logging
from flowbase.redis import get_redis_client
from flowbase.settings import get_settings

from flows_core.actions.builtin import register_builtin_handlers
from flows_core.actions.registry import ActionHandlerRegistry
from flows_core.bootstrap import build_flow_engine
from flows_core.contracts.envelope import BusEnvelope
from flows_core.contracts.types import MessageKind
from flows_core.engine.bus import LocalEventBus
from flows_core.engine.runtime import FlowEngine
from flows_core.errors import SchedulerDurabilityError, ValidationError
from flows_core.streams.consumer import FlowStreamConsumer
from flows_core.streams.groups import ensure_flow_streams, events_streams
from flows_messaging.handlers import register_messaging_handlers

logger = logging.getLogger(__name__)

settings = get_settings()

# Configuration
CONSUMER_NAME = os.getenv("FLOWS_CONSUMER_NAME", f"flows-{socket.gethostname()}-{os.getpid()}")
BATCH_SIZE = int(os.getenv("FLOWS_BATCH_SIZE", "10"))
BLOCK_MS = max(100, int(settings.SCHEDULER_TICK_SECONDS * 1000))
RECLAIM_INTERVAL_SEC = int(os.getenv("FLOWS_RECLAIM_INTERVAL", "60"))

# Graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    global shutdown_requested
    logger.info(f"Received signal {signum}, requesting shutdown...")
    shutdown_requested = True


def build_worker_engine(redis_client) -> FlowEngine:
    registry = register_messaging_handlers(register_builtin_handlers(ActionHandlerRegistry()), settings=settings)
    bus = LocalEventBus(ThreadPoolExecutor(max_workers=settings.WORKER_POOL_SIZE, thread_name_prefix="flows"))
    return build_flow_engine(settings, redis_client=redis_client, bus=bus, registry=registry)


def apply_remote_state(engine: FlowEngine, envelope: BusEnvelope) -> bool:
    """
    Mirror a record written by another process into the local datastore.

    Property writes are replayed through the local store, which is the
    authoritative copy: it computes the real old value, drops no-op writes
    and publishes the resulting change itself, under the change id the writer
    was given. A write that is dropped or rejected spawns nothing, so its
    cause is settled here. Returns whether the envelope still has to be
    delivered as is.
    """
    if envelope.kind == MessageKind.PROPERTY_CHANGE:
        change = envelope.change
        try:
            applied = engine.properties.set(
                change.contact_id,
                change.key,
                change.new_value,
                causation=change.causation,
                change_id=change.change_id,
            )
        except ValidationError as e:
            logger.warning(
                f"Forwarded write rejected: {e.message}",
                extra={"contact_id": change.contact_id, "key": change.key, "change_id": change.change_id},
            )
            applied = None
        if applied is None:
            engine.aggregator.open(change.change_id, [])
        return False
    if envelope.kind == MessageKind.EVENT:
        engine.events.record(envelope.event)
    return True


def process_messages(
    engine: FlowEngine,
    consumer: FlowStreamConsumer,
    messages: list[tuple[str, str, BusEnvelope]],
) -> int:
    """
    Deliver a batch to the engine and ACK it once the engine is idle.

    Messages stay pending (and are reclaimed later) if the engine hits a
    scheduler durability failure.
    """
    for _stream, _msg_id, envelope in messages:
        if apply_remote_state(engine, envelope):
            engine.bus.publish(envelope)

    engine.wait_idle()
    fatal = getattr(engine.bus, "fatal_error", None)
    if fatal is not None:
        raise fatal

    for stream_name, msg_id, envelope in messages:
        consumer.ack(stream_name, msg_id)
        logger.debug(
            f"Processed {envelope.kind}",
            extra={"envelope_id": envelope.envelope_id, "msg_id": msg_id},
        )
    return len(messages)


def reclaim_once(engine: FlowEngine, consumer: FlowStreamConsumer) -> int:
    reclaimed = 0
    for stream_name in events_streams(settings):
        claimed = consumer.reclaim_pending(stream_name, min_idle_ms=settings.RECLAIM_IDLE_MS)
        if claimed:
            reclaimed += process_messages(
                engine,
                consumer,
                [(stream_name, msg_id, envelope) for msg_id, envelope in claimed],
            )
    return reclaimed


def refresh_definitions(engine: FlowEngine) -> None:
    """Pick up flows defined or undefined by other processes."""
    engine.catalog.refresh()
    for definition in engine.store.pending_at_definitions():
        engine.scheduler.schedule_trigger(definition)


def run_reclaim_loop(engine: FlowEngine, consumer: FlowStreamConsumer):
    """
    Background thread for reclaiming pending messages.

    Runs every RECLAIM_INTERVAL_SEC seconds.
    """
    logger.info(
        f"Starting PEL reclaim loop (interval={RECLAIM_INTERVAL_SEC}s, "
        f"idle_threshold={settings.RECLAIM_IDLE_MS}ms)"
    )

    while not shutdown_requested:
        try:
            # Sleep first to allow main loop to start
            for _ in range(RECLAIM_INTERVAL_SEC):
                if shutdown_requested:
                    return
                time.sleep(1)

            reclaimed = reclaim_once(engine, consumer)
            if reclaimed > 0:
                logger.info(f"Reclaimed and processed {reclaimed} pending messages")

        except SchedulerDurabilityError:
            logger.critical("Scheduler halted during reclaim", exc_info=True)
            return
        except Exception as e:
            logger.error(f"Error in reclaim loop: {e}", exc_info=True)


def main():
    """Main worker loop."""
    setup_logging()
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    streams = events_streams(settings)
    logger.info(
        f"Starting flows worker (streams={streams}, group={settings.CONSUMER_GROUP}, "
        f"consumer={CONSUMER_NAME}, batch={BATCH_SIZE})"
    )

    redis_client = get_redis_client()
    try:
        ensure_flow_streams(redis_client, settings)
    except Exception as e:
        logger.error(f"Failed to initialize consumer groups: {e}", exc_info=True)
        sys.exit(1)

    engine = build_worker_engine(redis_client)
    consumer = FlowStreamConsumer(redis_client, CONSUMER_NAME, settings.CONSUMER_GROUP)

    recovered = engine.recover()
    logger.info(f"Recovered scheduler state: {recovered}")

    # Initial reclaim on startup to pick up orphaned messages
    try:
        initial_reclaimed = reclaim_once(engine, consumer)
        if initial_reclaimed > 0:
            logger.info(f"Initial reclaim: processed {initial_reclaimed} orphaned messages")
    except SchedulerDurabilityError:
        logger.critical("Scheduler halted during initial reclaim", exc_info=True)
        sys.exit(1)
    except Exception as e:
        logger.warning(f"Initial reclaim failed: {e}")

    reclaim_thread = threading.Thread(target=run_reclaim_loop, args=(engine, consumer), daemon=True)
    reclaim_thread.start()

    last_refresh = time.monotonic()
    exit_code = 0

    while not shutdown_requested:
        try:
            messages = consumer.read(streams, count=BATCH_SIZE, block_ms=BLOCK_MS)
            if messages:
                count = process_messages(engine, consumer, messages)
                logger.info(f"Processed {count} envelopes from streams")

            fired = engine.scheduler.tick()
            if fired:
                engine.wait_idle()

            if time.monotonic() - last_refresh >= settings.DEFINITIONS_REFRESH_SECONDS:
                refresh_definitions(engine)
                last_refresh = time.monotonic()

        except SchedulerDurabilityError:
            logger.critical("Scheduler durability failure; stopping worker", exc_info=True)
            exit_code = 1
            break
        except KeyboardInterrupt:
            break
        except Exception as e:
            logger.error(f"Error in consume loop: {e}", exc_info=True)
            time.sleep(1)  # Brief pause on error

    engine.close()
    logger.info("Flows worker shutting down gracefully")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
