"""
Stub Message Provider

Development provider that logs all operations without making real API calls.
Useful for local development and testing.
"""

import logging
import random
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from flows_messaging.providers.base import MessageProvider, ProviderError, ProviderResponse

logger = logging.getLogger(__name__)


class StubMessageProvider(MessageProvider):
    """
    Stub provider for development and testing.

    - Logs all outbound messages
    - Generates fake message IDs
    - Can be configured to simulate (retryable) failures
    """

    def __init__(
        self,
        simulate_failures: bool = False,
        failure_rate: float = 0.1,
    ):
        self.simulate_failures = simulate_failures
        self.failure_rate = failure_rate
        self.sent_messages: list[dict[str, Any]] = []

    def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        reference: str | None = None,
    ) -> ProviderResponse:
        """Log and return success for an email."""
        return self._record(
            "email",
            prefix="stub_email",
            to=to,
            subject=subject,
            body=body,
            reference=reference,
        )

    def send_sms(
        self,
        to: str,
        text: str,
        reference: str | None = None,
    ) -> ProviderResponse:
        """Log and return success for an SMS."""
        return self._record(
            "sms",
            prefix="stub_sms",
            to=to,
            text=text,
            reference=reference,
        )

    def _record(self, channel: str, prefix: str, **fields: Any) -> ProviderResponse:
        if self._should_fail():
            logger.warning(f"[STUB] Simulated {channel} failure", extra={"to": fields.get("to")})
            raise ProviderError(
                "Simulated failure for testing",
                code="STUB_SIMULATED_FAILURE",
                retryable=True,
            )

        message_id = f"{prefix}_{uuid4().hex[:16]}"
        self.sent_messages.append(
            {
                "type": channel,
                "message_id": message_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **fields,
            }
        )

        logger.info(
            f"[STUB] Sending {channel}",
            extra={"to": fields.get("to"), "message_id": message_id},
        )

        return ProviderResponse(
            message_id=message_id,
            raw_response={"stub": True, "message_id": message_id},
        )

    def _should_fail(self) -> bool:
        return self.simulate_failures and random.random() < self.failure_rate

    def clear_sent_messages(self) -> None:
        """Clear sent messages history (for testing)."""
        self.sent_messages.clear()
