"""Provider kinds and the registry that hands out the active provider."""

from __future__ import annotations

import enum
import logging
import threading
from typing import Callable

from ..store.settings import Settings
from ..transport import HttpTransport
from .base import ImageProvider
from .gemini import GeminiProvider
from .mock import MockProvider

logger = logging.getLogger(__name__)


class ProviderKind(str, enum.Enum):
    MOCK = "mock"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: str | None) -> "ProviderKind":
        """Map a configured provider name to a kind; unknown names mean mock."""
        normalized = str(value or "").strip().lower()
        for kind in cls:
            if kind.value == normalized:
                return kind
        if normalized:
            logger.warning("Unknown provider %r; using mock.", value)
        return cls.MOCK


def build_provider(
    kind: ProviderKind,
    settings_source: Callable[[], Settings],
    transport: HttpTransport | None = None,
) -> ImageProvider:
    if kind is ProviderKind.GEMINI:
        return GeminiProvider(settings_source, transport=transport)
    return MockProvider()


class ProviderRegistry:
    """Builds providers on first use and caches one instance per kind."""

    def __init__(
        self,
        settings_source: Callable[[], Settings],
        transport: HttpTransport | None = None,
        factory: Callable[..., ImageProvider] = build_provider,
    ) -> None:
        self._settings_source = settings_source
        self._transport = transport
        self._factory = factory
        self._lock = threading.Lock()
        self._providers: dict[ProviderKind, ImageProvider] = {}

    def get(self, kind: ProviderKind) -> ImageProvider:
        with self._lock:
            provider = self._providers.get(kind)
            if provider is None:
                provider = self._factory(kind, self._settings_source, transport=self._transport)
                self._providers[kind] = provider
            return provider

    def active(self) -> ImageProvider:
        return self.get(ProviderKind.parse(self._settings_source().provider))

    def list(self) -> list[str]:
        return sorted(kind.value for kind in ProviderKind)

    def refresh_transport(self) -> None:
        if self._transport is not None:
            self._transport.refresh()
        with self._lock:
            providers = list(self._providers.values())
        for provider in providers:
            refresh = getattr(provider, "refresh_transport", None)
            if callable(refresh) and getattr(provider, "transport", None) is not self._transport:
                refresh()
