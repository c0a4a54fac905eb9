"""
Channel action handlers.

    send_email  {"subject": ..., "body": ..., "to_property": "email"}
    send_sms    {"text": ..., "to_property": "phone"}
    webhook     {"url": ..., "method": "POST", "payload": {...},
                 "headers": {...}, "include_properties": false, "as": "var"}

Subjects, bodies and SMS texts are rendered with str.format against the
contact's properties and the instance variables; unknown fields render
empty. Provider and HTTP failures become retryable or fatal action errors
so the instance manager can back off or fail the instance.
"""

import logging
import string
from collections.abc import Mapping
from typing import Any

import httpx

from flowbase.settings import Settings, get_settings
from flows_core.actions.registry import ActionContext, ActionHandler, ActionHandlerRegistry, ActionResult
from flows_core.errors import FatalActionError, RetryableActionError

from flows_messaging.providers.base import MessageProvider, ProviderError
from flows_messaging.providers.factory import get_provider

logger = logging.getLogger(__name__)


class _Fields(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(template: str, ctx: ActionContext) -> str:
    fields = _Fields(ctx.properties)
    fields.update(ctx.variables)
    fields["contact_id"] = ctx.contact_id
    try:
        return string.Formatter().vformat(template, (), fields)
    except (ValueError, IndexError, AttributeError) as e:
        raise FatalActionError(f"Bad template {template!r}: {e}") from e


def _recipient(ctx: ActionContext, params: Mapping[str, Any], default_property: str) -> str:
    if params.get("to"):
        return str(params["to"])
    key = params.get("to_property", default_property)
    value = ctx.properties.get(key)
    if not value:
        raise FatalActionError(f"Contact {ctx.contact_id} has no {key}")
    return str(value)


def _raise_for_provider(e: ProviderError) -> None:
    if e.retryable:
        raise RetryableActionError(str(e), code=e.code, details=e.details) from e
    raise FatalActionError(str(e), code=e.code, details=e.details) from e


class SendEmailHandler(ActionHandler):
    handler_id = "send_email"

    def __init__(self, provider: MessageProvider):
        self.provider = provider

    def execute(self, ctx: ActionContext, params: Mapping[str, Any]) -> ActionResult:
        to = _recipient(ctx, params, "email")
        subject = render(str(params.get("subject", "")), ctx)
        body = render(str(params.get("body", "")), ctx)
        try:
            response = self.provider.send_email(to, subject, body, reference=params.get("reference") or ctx.instance_id)
        except ProviderError as e:
            _raise_for_provider(e)
        return ActionResult.ok(last_message_id=response.message_id)


class SendSmsHandler(ActionHandler):
    handler_id = "send_sms"

    def __init__(self, provider: MessageProvider):
        self.provider = provider

    def execute(self, ctx: ActionContext, params: Mapping[str, Any]) -> ActionResult:
        to = _recipient(ctx, params, "phone")
        text = render(str(params.get("text", "")), ctx)
        if not text:
            raise FatalActionError("send_sms needs a non-empty text")
        try:
            response = self.provider.send_sms(to, text, reference=params.get("reference") or ctx.instance_id)
        except ProviderError as e:
            _raise_for_provider(e)
        return ActionResult.ok(last_message_id=response.message_id)


class WebhookHandler(ActionHandler):
    """
    Call an external HTTP endpoint.

    The request body carries the contact, instance and flow ids next to the
    step's payload. 5xx, 429 and transport errors are retried; other 4xx
    answers fail the instance.
    """

    handler_id = "webhook"

    def __init__(self, client: httpx.Client | None = None, timeout: float = 10.0):
        self._client = client
        self.timeout = timeout

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    def execute(self, ctx: ActionContext, params: Mapping[str, Any]) -> ActionResult:
        url = params.get("url")
        if not url:
            raise FatalActionError("webhook needs a url")
        method = str(params.get("method", "POST")).upper()
        payload = params.get("payload") or {}
        headers = params.get("headers") or {}
        if not isinstance(payload, Mapping) or not isinstance(headers, Mapping):
            raise FatalActionError("webhook payload and headers must be objects")

        body: dict[str, Any] = {
            "contact_id": ctx.contact_id,
            "instance_id": ctx.instance_id,
            "flow_id": ctx.flow_id,
            "attempt": ctx.attempt,
            "payload": dict(payload),
        }
        if params.get("include_properties"):
            body["properties"] = dict(ctx.properties)

        try:
            response = self._get_client().request(
                method,
                url,
                json=body,
                headers=dict(headers),
            )
        except httpx.RequestError as e:
            logger.warning(
                f"Webhook request failed: {e}",
                extra={"url": url, "instance_id": ctx.instance_id},
            )
            raise RetryableActionError(f"Webhook request failed: {e}") from e

        status = response.status_code
        if status >= 500 or status == 429:
            raise RetryableActionError(f"Webhook answered {status}", details={"url": url, "status": status})
        if status >= 400:
            raise FatalActionError(f"Webhook answered {status}", details={"url": url, "status": status})

        logger.info(
            "Webhook delivered",
            extra={"url": url, "status": status, "instance_id": ctx.instance_id},
        )
        variable = params.get("as")
        return ActionResult.ok(**{variable: status}) if variable else ActionResult.ok()


def register_messaging_handlers(
    registry: ActionHandlerRegistry,
    provider: MessageProvider | None = None,
    http_client: httpx.Client | None = None,
    settings: Settings | None = None,
) -> ActionHandlerRegistry:
    settings = settings or get_settings()
    provider = provider or get_provider(settings)
    registry.register(SendEmailHandler.handler_id, SendEmailHandler(provider))
    registry.register(SendSmsHandler.handler_id, SendSmsHandler(provider))
    registry.register(
        WebhookHandler.handler_id,
        WebhookHandler(http_client, timeout=settings.WEBHOOK_TIMEOUT_SECONDS),
    )
    return registry
