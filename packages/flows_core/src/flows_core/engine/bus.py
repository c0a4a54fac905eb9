"""
Event bus and per-contact serialization.

LocalEventBus delivers envelopes to the engine's handlers in-process.

Without an executor it is synchronous: the first publisher drains the queue
and envelopes published while draining (by actions, by the scheduler) are
queued behind it, so a test run is fully deterministic. With an executor,
each envelope is delivered on a pool thread; the handlers serialize work per
contact with ContactSerializer.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from collections.abc import Callable, Iterator
from concurrent.futures import Executor
from contextlib import contextmanager

from flows_core.contracts.envelope import BusEnvelope
from flows_core.contracts.types import MessageKind
from flows_core.errors import SchedulerDurabilityError

logger = logging.getLogger(__name__)

Handler = Callable[[BusEnvelope], None]


class ContactSerializer:
    """One reentrant lock per contact, created on demand and dropped when idle."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def exclusive(self, contact_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(contact_id)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[contact_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[contact_id]


class EventBus(ABC):
    def __init__(self):
        self._handlers: dict[MessageKind, list[Handler]] = defaultdict(list)

    def subscribe(self, kind: MessageKind, handler: Handler) -> None:
        self._handlers[MessageKind(kind)].append(handler)

    @abstractmethod
    def publish(self, envelope: BusEnvelope) -> None:
        pass

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every published envelope has been delivered."""
        return True

    def close(self) -> None:
        pass

    def deliver(self, envelope: BusEnvelope) -> None:
        """Run every handler for the envelope's kind in the calling thread."""
        handlers = self._handlers.get(envelope.kind, [])
        if not handlers:
            logger.debug(f"No handlers for {envelope.kind}", extra={"envelope_id": envelope.envelope_id})
        for handler in handlers:
            try:
                handler(envelope)
            except SchedulerDurabilityError:
                raise
            except Exception as e:
                logger.error(
                    f"Error delivering {envelope.kind} {envelope.envelope_id}",
                    extra={
                        "envelope_id": envelope.envelope_id,
                        "kind": envelope.kind.value,
                        "contact_id": envelope.contact_id,
                        "error": str(e),
                    },
                    exc_info=True,
                )


class LocalEventBus(EventBus):
    def __init__(self, executor: Executor | None = None):
        super().__init__()
        self._executor = executor
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._queue: deque[BusEnvelope] = deque()
        self._draining = False
        self._outstanding = 0
        self.fatal_error: BaseException | None = None

    @property
    def pooled(self) -> bool:
        return self._executor is not None

    def publish(self, envelope: BusEnvelope) -> None:
        with self._lock:
            self._outstanding += 1
            if self._executor is not None:
                self._executor.submit(self._run_one, envelope)
                return
            self._queue.append(envelope)
            if self._draining:
                return
            self._draining = True
        self._drain()

    def _finished(self) -> None:
        # caller holds self._lock
        self._outstanding -= 1
        if self._outstanding == 0:
            self._idle.notify_all()

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._queue:
                    self._draining = False
                    return
                envelope = self._queue.popleft()
            try:
                self.deliver(envelope)
            except BaseException:
                with self._lock:
                    self._finished()
                    self._draining = False
                raise
            with self._lock:
                self._finished()

    def _run_one(self, envelope: BusEnvelope) -> None:
        try:
            self.deliver(envelope)
        except SchedulerDurabilityError as e:
            logger.critical(
                "Scheduler durability failure on pool thread",
                extra={"envelope_id": envelope.envelope_id, "error": str(e)},
            )
            self.fatal_error = e
        finally:
            with self._lock:
                self._finished()

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._lock:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
