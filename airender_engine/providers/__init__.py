"""Image providers."""

from __future__ import annotations

from typing import Callable

from ..store.settings import Settings
from ..transport import HttpTransport
from .registry import ProviderKind, ProviderRegistry, build_provider


def default_registry(
    settings_source: Callable[[], Settings],
    transport: HttpTransport | None = None,
) -> ProviderRegistry:
    return ProviderRegistry(settings_source, transport=transport)


__all__ = ["ProviderKind", "ProviderRegistry", "build_provider", "default_registry"]
