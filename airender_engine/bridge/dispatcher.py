"""Routes inbound command messages to the stores, the host and the provider.

One dispatcher serves one UI session. At most one generation runs at a time:
a new ``generate`` cancels the previous one before starting. Generation runs
on a worker thread so ``cancel`` and other commands stay responsive.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from ..cancellation import CANCELLED, Cancelled, CancellationToken
from ..capture import CaptureSize, resolve_capture_size
from ..context import AppContext
from ..errors import ValidationError
from ..providers.base import GenerateResult
from ..store.history import SessionInfo, SessionRecord, read_image_b64
from ..store.settings import Settings
from ..utils import b64encode, now_local
from .messages import OUTBOUND_TYPES, PROGRESS_STAGES, CaptureRequest, CommandMessage, GenerateRequest
from .outbox import Outbox, Sink

logger = logging.getLogger(__name__)

INITIAL_SYNC = ("listNamedViews", "getSettings", "getHistory")

_FAILURE_MESSAGES = {
    "listNamedViews": "Could not list named views",
    "capturePreview": "Capture failed",
    "generate": "Generation failed",
    "getSettings": "Could not load settings",
    "setSettings": "Could not save settings",
    "openFolder": "Could not open folder",
    "getHistory": "Could not load history",
    "loadHistoryImages": "Could not load history images",
    "toggleFavorite": "Could not update favorite",
}


@dataclass
class _Generation:
    token: CancellationToken = field(default_factory=CancellationToken)
    thread: threading.Thread | None = None


class Dispatcher:
    def __init__(self, context: AppContext, outbox: Outbox | None = None) -> None:
        self.context = context
        self.outbox = outbox or Outbox()
        self._lock = threading.Lock()
        self._current: _Generation | None = None
        self._handlers: dict[str, Callable[[Any], None]] = {
            "listNamedViews": self._list_named_views,
            "capturePreview": self._capture_preview,
            "generate": self._generate,
            "cancel": self._cancel,
            "getSettings": self._get_settings,
            "setSettings": self._set_settings,
            "openFolder": self._open_folder,
            "getHistory": self._get_history,
            "loadHistoryImages": self._load_history_images,
            "toggleFavorite": self._toggle_favorite,
        }

    # Transport lifecycle

    def attach(self, sink: Sink) -> None:
        """Mark the UI transport ready: flush queued messages, then sync state."""
        self.outbox.mark_ready(sink)
        for message_type in INITIAL_SYNC:
            self.handle(CommandMessage(message_type))

    def send(self, message_type: str, data: Any = None) -> None:
        if message_type not in OUTBOUND_TYPES:
            raise ValueError(f"Unknown outbound message type {message_type!r}")
        self.outbox.post(CommandMessage(message_type, data))

    # Inbound

    def handle_json(self, text: str | bytes) -> None:
        try:
            message = CommandMessage.from_json(text)
        except ValidationError as exc:
            logger.warning("Rejected inbound message: %s", exc)
            self._send_error("Invalid message", str(exc))
            return
        self.handle(message)

    def handle(self, message: CommandMessage) -> None:
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.warning("Ignoring unknown message type %r", message.type)
            return
        logger.debug("Handling %s", message.type)
        try:
            handler(message.data)
        except Exception as exc:
            logger.warning("%s failed: %s", message.type, exc, exc_info=logger.isEnabledFor(logging.DEBUG))
            self._send_error(_FAILURE_MESSAGES.get(message.type, "Command failed"), str(exc))

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._current is not None

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until the in-flight generation (if any) finishes."""
        with self._lock:
            current = self._current
        if current is None or current.thread is None:
            return True
        current.thread.join(timeout)
        return not current.thread.is_alive()

    # Handlers

    def _list_named_views(self, _data: Any) -> None:
        self.send("namedViews", {"items": list(self.context.host.list_named_views())})

    def _capture_preview(self, data: Any) -> None:
        request = CaptureRequest.from_payload(data)
        size = self._capture_size(request)
        image = self._capture(request, size, transparent=request.transparent)
        self.send("previewImage", {"base64": b64encode(image), "width": size.width, "height": size.height})

    def _generate(self, data: Any) -> None:
        request = GenerateRequest.from_payload(data)
        generation = _Generation()
        with self._lock:
            previous = self._current
            self._current = generation
        if previous is not None:
            logger.info("Cancelling the previous generation.")
            previous.token.cancel()
        generation.thread = threading.Thread(
            target=self._run_generation,
            args=(request, generation),
            name="airender-generate",
            daemon=True,
        )
        generation.thread.start()

    def _cancel(self, _data: Any) -> None:
        with self._lock:
            current = self._current
        if current is None:
            logger.debug("Cancel requested with no generation in flight.")
            return
        current.token.cancel()

    def _get_settings(self, _data: Any) -> None:
        self.send("settings", self.context.load_settings().to_payload())

    def _set_settings(self, data: Any) -> None:
        if not isinstance(data, Mapping):
            raise ValidationError("Settings payload must be an object.")
        saved = self.context.settings.save(Settings.from_payload(data))
        self.context.providers.refresh_transport()
        self.context.events.emit(
            "settings_saved",
            provider=saved.provider,
            output_mode=saved.output_mode,
            proxy=bool(saved.proxy_url),
        )
        self.send("settings", saved.to_payload())

    def _open_folder(self, data: Any) -> None:
        raw = data.get("path") if isinstance(data, Mapping) else None
        if not raw:
            return
        path = Path(str(raw)).expanduser()
        if not path.exists():
            logger.info("openFolder: %s does not exist; ignoring.", path)
            return
        self.context.open_folder(path)

    def _get_history(self, _data: Any) -> None:
        self._send_history()

    def _load_history_images(self, data: Any) -> None:
        data = data if isinstance(data, Mapping) else {}
        paths = data.get("paths") or []
        if not isinstance(paths, list):
            raise ValidationError("paths must be a list.")
        payload: dict[str, Any] = {"images": self.context.history.load_images([str(path) for path in paths])}
        screenshot = read_image_b64(data.get("screenshotPath"))
        if screenshot is not None:
            payload["screenshot"] = screenshot
        self.send("historyImages", payload)

    def _toggle_favorite(self, data: Any) -> None:
        history_id = str(data.get("historyId") or "").strip() if isinstance(data, Mapping) else ""
        if not history_id:
            raise ValidationError("historyId is required.")
        state = self.context.favorites.toggle(history_id)
        self.context.events.emit("favorite_toggled", history_id=history_id, is_favorite=state)
        self.send("favoriteStatus", {"historyId": history_id, "isFavorite": state})

    # Generation

    def _run_generation(self, request: GenerateRequest, generation: _Generation) -> None:
        events = self.context.events
        events.emit(
            "generation_started",
            count=request.count,
            mode=request.options.tier,
            source=request.capture.source,
        )
        try:
            outcome = self._generate_session(request, generation.token)
        except Exception as exc:
            logger.warning("Generation failed: %s", exc)
            events.emit("generation_failed", error=str(exc), error_type=type(exc).__name__)
            self._send_error(_FAILURE_MESSAGES["generate"], str(exc))
        else:
            if isinstance(outcome, Cancelled):
                logger.info("Generation cancelled.")
                events.emit("generation_cancelled")
                self._progress("cancelled", "Cancelled", 0)
        finally:
            with self._lock:
                if self._current is generation:
                    self._current = None

    def _generate_session(self, request: GenerateRequest, token: CancellationToken) -> SessionRecord | Cancelled:
        self._progress("capture", "Capturing viewport...", 10)
        size = self._capture_size(request.capture)
        image = self._capture(request.capture, size, transparent=False)
        if token.cancelled:
            return CANCELLED

        self._progress("generate", "Generating...", 30)
        provider = self.context.providers.active()
        outcome = provider.generate(
            request.prompt,
            image,
            request.count,
            size.width,
            size.height,
            token,
            request.options,
        )
        if isinstance(outcome, Cancelled) or token.cancelled:
            return CANCELLED

        self._progress("save", "Saving...", 80)
        record = self.context.history.save(
            outcome.images,
            image,
            SessionInfo(
                prompt=request.prompt,
                source=request.capture.source,
                named_view=request.capture.named_view if request.capture.uses_named_view else None,
                width=size.width,
                height=size.height,
                provider=provider.name,
                model=outcome.model,
                request_id=outcome.request_id,
            ),
        )
        self.context.events.emit(
            "session_saved",
            session_id=record.id,
            provider=provider.name,
            model=outcome.model,
            images=len(record.paths),
        )
        if token.cancelled:
            # Saved but superseded: it only shows up in the history list.
            self._send_history()
            return CANCELLED
        self._send_result(provider.name, outcome, record)
        self._send_history()
        return record

    def _send_result(self, provider_name: str, result: GenerateResult, record: SessionRecord) -> None:
        self.send(
            "generateResult",
            {
                "images": [b64encode(image) for image in result.images],
                "paths": list(record.paths),
                "meta": {
                    "provider": provider_name,
                    "model": result.model,
                    "requestId": result.request_id,
                    "timestamp": now_local().isoformat(),
                },
            },
        )

    # Helpers

    def _capture_size(self, request: CaptureRequest) -> CaptureSize:
        viewport = self.context.host.viewport_size() if request.capture_mode == "viewport" else None
        return resolve_capture_size(
            width=request.width,
            height=request.height,
            long_edge=request.long_edge,
            aspect_ratio=request.aspect_ratio,
            capture_mode=request.capture_mode,
            viewport_size=viewport,
        )

    def _capture(self, request: CaptureRequest, size: CaptureSize, *, transparent: bool) -> bytes:
        host = self.context.host
        if request.uses_named_view:
            return host.capture_named(request.named_view or "", size.width, size.height, transparent)
        return host.capture_active(size.width, size.height, transparent)

    def _send_history(self) -> None:
        favorite_ids = self.context.favorites.ids()
        records = self.context.history.list()
        self.send(
            "historyUpdate",
            {
                "items": [record.to_payload(record.id in favorite_ids) for record in records],
                "favoriteIds": sorted(favorite_ids),
            },
        )

    def _progress(self, stage: str, message: str, percent: int | None = None) -> None:
        if stage not in PROGRESS_STAGES:
            raise ValueError(f"Unknown progress stage {stage!r}")
        payload: dict[str, Any] = {"stage": stage, "message": message}
        if percent is not None:
            payload["percent"] = percent
        self.send("generateProgress", payload)

    def _send_error(self, message: str, details: str | None = None) -> None:
        payload: dict[str, Any] = {"message": message}
        if details:
            payload["details"] = details
        self.send("error", payload)
