"""Command-message envelope and request payloads exchanged with the UI."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..errors import ValidationError
from ..providers.base import DEFAULT_CONTRAST_ADJUST, TIERS, GenerationOptions

OUTBOUND_TYPES = frozenset(
    {
        "namedViews",
        "previewImage",
        "generateProgress",
        "generateResult",
        "error",
        "settings",
        "historyUpdate",
        "historyImages",
        "favoriteStatus",
    }
)

PROGRESS_STAGES = ("capture", "generate", "save", "cancelled")


@dataclass(frozen=True)
class CommandMessage:
    type: str
    data: Any = None

    @classmethod
    def from_json(cls, text: str | bytes) -> "CommandMessage":
        try:
            payload = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Message is not valid JSON: {exc}") from exc
        return cls.from_payload(payload)

    @classmethod
    def from_payload(cls, payload: Any) -> "CommandMessage":
        if not isinstance(payload, Mapping):
            raise ValidationError("Message must be a JSON object.")
        message_type = payload.get("type")
        if not isinstance(message_type, str) or not message_type:
            raise ValidationError("Message is missing a type.")
        return cls(type=message_type, data=payload.get("data"))

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False)


def _data(payload: Any) -> Mapping[str, Any]:
    return payload if isinstance(payload, Mapping) else {}


def _int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Expected a number, got {value!r}.") from exc


def _bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value or "").strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return default


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class CaptureRequest:
    source: str = "active"
    named_view: str | None = None
    width: int = 0
    height: int = 0
    transparent: bool = False
    long_edge: int = 0
    aspect_ratio: str | None = None
    capture_mode: str | None = None

    @property
    def uses_named_view(self) -> bool:
        return self.source == "named" and bool(self.named_view)

    @classmethod
    def from_payload(cls, payload: Any) -> "CaptureRequest":
        data = _data(payload)
        return cls(
            source=str(data.get("source") or "active"),
            named_view=_opt_str(data.get("namedView")),
            width=_int(data.get("width")),
            height=_int(data.get("height")),
            transparent=_bool(data.get("transparent"), False),
            long_edge=_int(data.get("longEdge")),
            aspect_ratio=_opt_str(data.get("aspectRatio")),
            capture_mode=_opt_str(data.get("captureMode")),
        )


@dataclass(frozen=True)
class GenerateRequest:
    prompt: str
    capture: CaptureRequest = field(default_factory=CaptureRequest)
    count: int = 1
    options: GenerationOptions = field(default_factory=GenerationOptions)

    @classmethod
    def from_payload(cls, payload: Any) -> "GenerateRequest":
        data = _data(payload)
        prompt = str(data.get("prompt") or "").strip()
        if not prompt:
            raise ValidationError("Prompt must not be empty.")
        count = _int(data.get("count"), 1)
        if count < 1:
            raise ValidationError("Image count must be at least 1.")
        tier = str(data.get("mode") or "pro").strip().lower()
        if tier not in TIERS:
            raise ValidationError(f"Unknown mode {tier!r}; expected one of {', '.join(TIERS)}.")
        capture = CaptureRequest.from_payload({**data, "transparent": False})
        options = GenerationOptions(
            tier=tier,
            resolution=_opt_str(data.get("resolution")) if tier == "pro" else None,
            aspect_ratio=capture.aspect_ratio,
            contrast_adjust=_int(data.get("contrastAdjust"), DEFAULT_CONTRAST_ADJUST),
        )
        return cls(prompt=prompt, capture=capture, count=count, options=options)
