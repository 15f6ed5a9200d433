"""Generation provider adapters."""

from genrelay.orchestrator.providers.base import (
    ProviderAdapter,
    ProviderPoll,
    ProviderRequest,
    ProviderStart,
    ProviderStatus,
    coerce_progress,
    normalize_provider_status,
)
from genrelay.orchestrator.providers.echo_provider import EchoProviderAdapter
from genrelay.orchestrator.providers.http_provider import HttpProviderAdapter

__all__ = [
    "EchoProviderAdapter",
    "HttpProviderAdapter",
    "ProviderAdapter",
    "ProviderPoll",
    "ProviderRequest",
    "ProviderStart",
    "ProviderStatus",
    "coerce_progress",
    "normalize_provider_status",
]
