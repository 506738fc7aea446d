"""API key resolution: environment first, stored settings second."""

from __future__ import annotations

import os
from dataclasses import dataclass

from ..store.settings import Settings

PRIMARY_KEY_ENV = "GEMINI_API_KEY"
SECONDARY_KEY_ENV = "VERTEX_API_KEY"


@dataclass(frozen=True)
class Credentials:
    primary: str | None
    secondary: str | None

    @property
    def any(self) -> bool:
        return bool(self.primary or self.secondary)


def resolve_credentials(settings: Settings) -> Credentials:
    primary = _env(PRIMARY_KEY_ENV) or settings.api_key or None
    secondary = _env(SECONDARY_KEY_ENV) or settings.vertex_api_key or primary
    return Credentials(primary=primary, secondary=secondary)


def _env(name: str) -> str | None:
    value = str(os.getenv(name) or "").strip()
    return value or None
