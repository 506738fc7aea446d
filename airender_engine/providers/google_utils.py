"""Shared helpers for the Google image endpoints."""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
VERTEX_EXPRESS_BASE = "https://aiplatform.googleapis.com/v1/publishers/google/models"

MODEL_PRO = "gemini-3-pro-image-preview"
MODEL_FLASH = "gemini-2.5-flash-image"

IMAGE_SIZES = ("1K", "2K", "4K")
DEFAULT_IMAGE_SIZE = "1K"

_RATIO_RE = re.compile(r"^\s*(\d+)\s*[:/]\s*(\d+)\s*$")

_GEMINI_RATIOS = {
    "1:1": 1.0,
    "2:3": 2.0 / 3.0,
    "3:2": 3.0 / 2.0,
    "3:4": 3.0 / 4.0,
    "4:3": 4.0 / 3.0,
    "4:5": 4.0 / 5.0,
    "5:4": 5.0 / 4.0,
    "9:16": 9.0 / 16.0,
    "16:9": 16.0 / 9.0,
    "21:9": 21.0 / 9.0,
}


@dataclass(frozen=True)
class Endpoint:
    name: str
    url_template: str
    api_key: str
    requires_role: bool

    def url_for(self, model: str) -> str:
        return self.url_template.format(model=model, key=self.api_key)


def gemini_endpoint(api_key: str) -> Endpoint:
    return Endpoint(
        name="gemini",
        url_template=GEMINI_API_BASE + "/{model}:generateContent?key={key}",
        api_key=api_key,
        requires_role=False,
    )


def vertex_endpoint(api_key: str) -> Endpoint:
    return Endpoint(
        name="vertex",
        url_template=VERTEX_EXPRESS_BASE + "/{model}:generateContent?key={key}",
        api_key=api_key,
        requires_role=True,
    )


def model_for_tier(tier: str) -> str:
    return MODEL_FLASH if tier == "flash" else MODEL_PRO


def parse_ratio(value: str | None) -> Optional[Tuple[int, int]]:
    if not value:
        return None
    match = _RATIO_RE.match(value)
    if not match:
        return None
    w = int(match.group(1))
    h = int(match.group(2))
    if w <= 0 or h <= 0:
        return None
    return w, h


def normalize_aspect_ratio(value: str | None, warnings: list[str]) -> Optional[str]:
    """Empty or ``auto`` means no hint; anything else snaps to a supported ratio."""
    if not value:
        return None
    normalized = value.strip().lower()
    if normalized in {"", "auto"}:
        return None
    ratio = parse_ratio(normalized)
    if not ratio:
        warnings.append(f"Ignoring unrecognised aspect ratio {value!r}.")
        return None
    candidate = f"{ratio[0]}:{ratio[1]}"
    if candidate in _GEMINI_RATIOS:
        return candidate
    target_ratio = ratio[0] / ratio[1]
    best_key = min(_GEMINI_RATIOS, key=lambda key: abs(_GEMINI_RATIOS[key] - target_ratio))
    warnings.append(f"Gemini aspect ratio snapped to {best_key}.")
    return best_key


def resolve_image_size_hint(value: str | None) -> str:
    if not value:
        return DEFAULT_IMAGE_SIZE
    normalized = value.strip().upper()
    if normalized in IMAGE_SIZES:
        return normalized
    return DEFAULT_IMAGE_SIZE


def extract_inline_image(payload: Mapping[str, Any]) -> Optional[Tuple[bytes, str]]:
    """First ``image/*`` inline part of the response, as (bytes, mime type).

    Accepts both ``inlineData``/``mimeType`` and ``inline_data``/``mime_type``.
    """
    candidates = payload.get("candidates")
    if not isinstance(candidates, list):
        return None
    for candidate in candidates:
        if not isinstance(candidate, Mapping):
            continue
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, Mapping) else None
        if not isinstance(parts, list):
            continue
        for part in parts:
            if not isinstance(part, Mapping):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if not isinstance(inline, Mapping):
                continue
            mime_type = inline.get("mimeType") or inline.get("mime_type")
            data = inline.get("data")
            if not data or not isinstance(mime_type, str) or not mime_type.startswith("image/"):
                continue
            try:
                return base64.b64decode(data), mime_type
            except (binascii.Error, TypeError, ValueError):
                continue
    return None


def extract_text(payload: Mapping[str, Any]) -> str | None:
    candidates = payload.get("candidates")
    if not isinstance(candidates, list):
        return None
    for candidate in candidates:
        content = candidate.get("content") if isinstance(candidate, Mapping) else None
        parts = content.get("parts") if isinstance(content, Mapping) else None
        for part in parts or []:
            if isinstance(part, Mapping) and isinstance(part.get("text"), str) and part["text"].strip():
                return part["text"]
    return None


def extract_error_message(payload: Mapping[str, Any], raw: str) -> str:
    error = payload.get("error")
    if isinstance(error, Mapping):
        message = error.get("message")
        status = error.get("status")
        if message or status:
            return f"{status}: {message}"
    text = raw or str(payload.get("raw") or "")
    return text if len(text) <= 200 else f"{text[:200]}..."
