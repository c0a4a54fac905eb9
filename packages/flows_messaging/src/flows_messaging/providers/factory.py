"""Provider selection from settings."""

from flowbase.settings import Settings, get_settings

from flows_messaging.providers.base import MessageProvider
from flows_messaging.providers.http import HttpMessageProvider
from flows_messaging.providers.stub import StubMessageProvider


def get_provider(settings: Settings | None = None) -> MessageProvider:
    settings = settings or get_settings()
    if settings.MESSAGING_PROVIDER == "http":
        if not settings.MESSAGING_API_URL:
            raise ValueError("MESSAGING_API_URL is required for the http provider")
        return HttpMessageProvider(
            settings.MESSAGING_API_URL,
            api_key=settings.MESSAGING_API_KEY,
            timeout=settings.MESSAGING_TIMEOUT_SECONDS,
        )
    return StubMessageProvider()
