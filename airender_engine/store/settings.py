"""Persisted user settings."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

from ..errors import PersistenceError
from ..utils import read_json

logger = logging.getLogger(__name__)

OUTPUT_MODES = ("auto", "fixed")

# dataclass field -> persisted / wire key
_WIRE_KEYS = {
    "output_mode": "outputMode",
    "output_folder": "outputFolder",
    "api_key": "apiKey",
    "vertex_api_key": "vertexApiKey",
    "provider": "provider",
    "dev_mode": "devMode",
    "proxy_url": "proxyUrl",
    "use_gemini_api": "useGeminiApi",
    "use_vertex_ai": "useVertexAI",
}


@dataclass(frozen=True)
class Settings:
    output_mode: str = "auto"
    output_folder: str | None = None
    api_key: str | None = None
    vertex_api_key: str | None = None
    provider: str = "mock"
    dev_mode: bool = False
    proxy_url: str | None = None
    use_gemini_api: bool = True
    use_vertex_ai: bool = True

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "Settings":
        """Build settings from a wire/persisted mapping.

        Missing keys and values of the wrong type fall back to the default of
        that field; unknown keys are ignored.
        """
        defaults = cls()
        if not isinstance(payload, Mapping):
            return defaults
        values: dict[str, Any] = {}
        for item in fields(cls):
            wire_key = _WIRE_KEYS[item.name]
            if wire_key in payload:
                raw = payload[wire_key]
            elif item.name in payload:
                raw = payload[item.name]
            else:
                continue
            default = getattr(defaults, item.name)
            values[item.name] = _coerce(raw, default)
        settings = replace(defaults, **values)
        if settings.output_mode not in OUTPUT_MODES:
            settings = replace(settings, output_mode=defaults.output_mode)
        return settings

    def to_payload(self) -> dict[str, Any]:
        return {_WIRE_KEYS[item.name]: getattr(self, item.name) for item in fields(self)}


def _coerce(raw: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str) and raw.strip().lower() in {"1", "true", "yes", "on", "0", "false", "no", "off"}:
            return raw.strip().lower() in {"1", "true", "yes", "on"}
        return default
    if isinstance(raw, str):
        return raw.strip() or default
    return default


class SettingsStore:
    """Reads and rewrites ``settings.json`` under the config root."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> Settings:
        payload = read_json(self.path, None)
        if payload is None:
            return Settings()
        if not isinstance(payload, dict):
            logger.warning("Settings file %s is not an object; using defaults.", self.path)
            return Settings()
        return Settings.from_payload(payload)

    def save(self, settings: Settings) -> Settings:
        text = json.dumps(settings.to_payload(), indent=2)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self.path.with_suffix(".json.tmp")
                tmp_path.write_text(text, encoding="utf-8")
                tmp_path.replace(self.path)
            except OSError as exc:
                raise PersistenceError(f"Could not save settings to {self.path}: {exc}") from exc
        return settings
