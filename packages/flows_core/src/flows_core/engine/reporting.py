"""Where failed instances are reported."""

import logging
from abc import ABC, abstractmethod

from flows_core.engine.state import FlowInstance

logger = logging.getLogger(__name__)


class FailureReporter(ABC):
    @abstractmethod
    def report(self, instance: FlowInstance, reason: str) -> None:
        pass


class LoggingFailureReporter(FailureReporter):
    """Logs failures and keeps the most recent ones for inspection."""

    def __init__(self, keep: int = 100):
        self.keep = keep
        self.reported: list[tuple[str, str]] = []

    def report(self, instance: FlowInstance, reason: str) -> None:
        logger.error(
            f"Flow instance {instance.instance_id} failed: {reason}",
            extra={
                "instance_id": instance.instance_id,
                "flow_id": instance.flow_id,
                "contact_id": instance.contact_id,
                "attempts": instance.attempts,
                "reason": reason,
            },
        )
        self.reported.append((instance.instance_id, reason))
        del self.reported[: -self.keep]


class CompositeFailureReporter(FailureReporter):
    def __init__(self, *reporters: FailureReporter):
        self.reporters = list(reporters)

    def report(self, instance: FlowInstance, reason: str) -> None:
        for reporter in self.reporters:
            try:
                reporter.report(instance, reason)
            except Exception:
                logger.error(
                    f"Failure reporter {type(reporter).__name__} raised",
                    extra={"instance_id": instance.instance_id},
                    exc_info=True,
                )
