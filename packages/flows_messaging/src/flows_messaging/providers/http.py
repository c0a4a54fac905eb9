"""
HTTP Message Provider

Production provider that hands email and SMS to a relay API over HTTPS:

    POST {base_url}/email  {"to", "subject", "body", "reference"}
    POST {base_url}/sms    {"to", "text", "reference"}

The relay answers with {"id": "..."}; 5xx and transport errors are
retryable, 4xx are not.
"""

import logging
from typing import Any

import httpx

from flows_messaging.providers.base import MessageProvider, ProviderError, ProviderResponse

logger = logging.getLogger(__name__)


class HttpMessageProvider(MessageProvider):
    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.Client(timeout=self.timeout, headers=headers)
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            self._client.close()

    def _post(self, path: str, json_data: dict[str, Any]) -> dict[str, Any]:
        client = self._get_client()
        url = f"{self.base_url}/{path}"

        try:
            response = client.post(url, json=json_data)
        except httpx.RequestError as e:
            logger.error(f"HTTP request failed: {e}")
            raise ProviderError(
                f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            )

        try:
            response_data = response.json()
        except ValueError:
            response_data = {"text": response.text}

        if response.status_code >= 400:
            error = response_data.get("error") or {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise ProviderError(
                error.get("message", f"Relay answered {response.status_code}"),
                code=str(error.get("code", response.status_code)),
                details=error,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        return response_data

    def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        reference: str | None = None,
    ) -> ProviderResponse:
        response = self._post("email", {"to": to, "subject": subject, "body": body, "reference": reference})
        message_id = response.get("id")
        logger.info("Sent email via relay", extra={"to": to, "message_id": message_id})
        return ProviderResponse(message_id=message_id, raw_response=response)

    def send_sms(
        self,
        to: str,
        text: str,
        reference: str | None = None,
    ) -> ProviderResponse:
        response = self._post("sms", {"to": to, "text": text, "reference": reference})
        message_id = response.get("id")
        logger.info("Sent SMS via relay", extra={"to": to, "message_id": message_id})
        return ProviderResponse(message_id=message_id, raw_response=response)
