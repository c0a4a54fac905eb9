"""
Message Provider Base

Abstract interface for outbound email and SMS providers.
Implementations: HTTP relay API, Stub (for development).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class ProviderError(Exception):
    """Error from a message provider."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable


@dataclass
class ProviderResponse:
    """
    Response from provider after accepting a message.
    """

    message_id: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


class MessageProvider(ABC):
    """
    Abstract interface for message providers.

    Sends raise ProviderError on failure; ``retryable`` tells the caller
    whether the same message may be sent again later.
    """

    @abstractmethod
    def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        reference: str | None = None,
    ) -> ProviderResponse:
        """
        Send an email.

        Args:
            to: Recipient address
            subject: Subject line
            body: Plain text body
            reference: Idempotency reference (the flow instance and step)

        Returns:
            ProviderResponse with the provider's message ID
        """
        ...

    @abstractmethod
    def send_sms(
        self,
        to: str,
        text: str,
        reference: str | None = None,
    ) -> ProviderResponse:
        """
        Send an SMS.

        Args:
            to: Recipient phone number (E.164 format)
            text: Message text
            reference: Idempotency reference (the flow instance and step)

        Returns:
            ProviderResponse with the provider's message ID
        """
        ...

    def close(self) -> None:
        """Release provider resources."""
