from flows_messaging.providers.base import MessageProvider, ProviderError, ProviderResponse
from flows_messaging.providers.factory import get_provider
from flows_messaging.providers.http import HttpMessageProvider
from flows_messaging.providers.stub import StubMessageProvider

__all__ = [
    "HttpMessageProvider",
    "MessageProvider",
    "ProviderError",
    "ProviderResponse",
    "StubMessageProvider",
    "get_provider",
]
