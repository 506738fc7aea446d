from __future__ import annotations

import base64
import io
import json
import re
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest
from PIL import Image

from airender_engine.bridge.dispatcher import Dispatcher
from airender_engine.bridge.messages import CommandMessage
from airender_engine.cancellation import CANCELLED
from airender_engine.context import AppContext
from airender_engine.errors import AllEndpointsFailedError, ValidationError
from airender_engine.imaging import encode_png
from airender_engine.providers import ProviderKind, ProviderRegistry, build_provider
from airender_engine.providers.base import GenerateResult
from airender_engine.providers.google_utils import Endpoint
from airender_engine.providers.mock import MockProvider

SESSION_DIR_RE = re.compile(r"^\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}_[0-9a-f]{12}$")


class FakeHost:
    def __init__(self, scene: Path | None = None) -> None:
        self.scene = scene

    def list_named_views(self) -> list[str]:
        return ["Front", "Top"]

    def capture_active(self, width: int, height: int, transparent: bool) -> bytes:
        mode = "RGBA" if transparent else "RGB"
        return encode_png(Image.new(mode, (width, height), (120, 130, 140)))

    def capture_named(self, name: str, width: int, height: int, transparent: bool) -> bytes:
        if name not in self.list_named_views():
            raise ValidationError(f"Named view not found: {name}")
        return encode_png(Image.new("RGB", (width, height), (10, 20, 30)))

    def viewport_size(self) -> tuple[int, int]:
        return (800, 600)

    def scene_path(self) -> Path | None:
        return self.scene


class Recorder:
    def __init__(self) -> None:
        self.messages: list[CommandMessage] = []
        self._lock = threading.Lock()

    def __call__(self, message: CommandMessage) -> None:
        with self._lock:
            self.messages.append(message)

    def types(self) -> list[str]:
        with self._lock:
            return [message.type for message in self.messages]

    def of(self, message_type: str) -> list[Any]:
        with self._lock:
            return [message.data for message in self.messages if message.type == message_type]


class BlockingProvider:
    name = "mock"
    requires_credential = False

    def __init__(self) -> None:
        self.started = threading.Event()
        self.tokens: list[Any] = []

    def generate(self, prompt, reference_image, count, width, height, token, options=None):
        self.tokens.append(token)
        self.started.set()
        if token.wait(5):
            return CANCELLED
        return GenerateResult(images=[reference_image] * count, model="blocking")


class FirstCallBlocks(BlockingProvider):
    def generate(self, prompt, reference_image, count, width, height, token, options=None):
        if not self.tokens:
            return super().generate(prompt, reference_image, count, width, height, token, options)
        self.tokens.append(token)
        return GenerateResult(images=[reference_image] * count, model="second", request_id="req-2")


class FailingProvider:
    name = "mock"
    requires_credential = False

    def generate(self, prompt, reference_image, count, width, height, token, options=None):
        raise AllEndpointsFailedError("Image 1: all endpoints failed (gemini: HTTP 500)", ["gemini: HTTP 500"])


def _fast_factory(kind, settings_source, transport=None):
    if kind is ProviderKind.MOCK:
        return MockProvider(initial_delay_s=0, per_image_delay_s=0)
    return build_provider(kind, settings_source, transport=transport)


def _fixed(provider) -> Callable[..., Any]:
    return lambda kind, settings_source, transport=None: provider


def _make(
    tmp_path: Path,
    factory: Callable[..., Any] = _fast_factory,
    opened: list[Path] | None = None,
) -> tuple[Dispatcher, Recorder, AppContext]:
    context = AppContext.create(
        root=tmp_path / "home",
        host=FakeHost(),
        open_folder=(opened.append if opened is not None else lambda path: None),
        registry_factory=lambda source, transport=None: ProviderRegistry(source, transport=transport, factory=factory),
    )
    dispatcher = Dispatcher(context)
    recorder = Recorder()
    dispatcher.attach(recorder)
    recorder.messages.clear()
    return dispatcher, recorder, context


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _event_types(context: AppContext) -> list[str]:
    return [event["type"] for event in context.events.read()]


def _session_dirs(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return [entry for entry in root.iterdir() if entry.is_dir()]


def test_attach_flushes_queue_then_syncs(tmp_path: Path) -> None:
    context = AppContext.create(root=tmp_path / "home", host=FakeHost())
    dispatcher = Dispatcher(context)
    dispatcher.handle(CommandMessage("getSettings"))
    recorder = Recorder()
    dispatcher.attach(recorder)
    assert recorder.types() == ["settings", "namedViews", "settings", "historyUpdate"]
    assert recorder.of("namedViews")[0] == {"items": ["Front", "Top"]}
    assert recorder.of("historyUpdate")[0] == {"items": [], "favoriteIds": []}


def test_generate_with_mock_produces_ordered_session(tmp_path: Path) -> None:
    dispatcher, recorder, context = _make(tmp_path)
    dispatcher.handle(
        CommandMessage("generate", {"prompt": "a timber cabin", "width": 320, "height": 200, "count": 3, "mode": "pro"})
    )
    assert dispatcher.wait_idle(10)

    assert recorder.types() == [
        "generateProgress",
        "generateProgress",
        "generateProgress",
        "generateResult",
        "historyUpdate",
    ]
    assert [item["stage"] for item in recorder.of("generateProgress")] == ["capture", "generate", "save"]
    result = recorder.of("generateResult")[0]
    assert len(result["images"]) == 3
    assert len(result["paths"]) == 3
    assert result["meta"]["provider"] == "mock"
    assert result["meta"]["model"] == "mock-v1"
    assert result["meta"]["requestId"]
    for encoded, path in zip(result["images"], result["paths"]):
        assert base64.b64decode(encoded) == Path(path).read_bytes()
        with Image.open(path) as image:
            assert image.size == (320, 200)

    history = recorder.of("historyUpdate")[0]
    assert [item["paths"] for item in history["items"]] == [result["paths"]]
    assert history["items"][0]["isFavorite"] is False
    assert history["items"][0]["prompt"] == "a timber cabin"
    assert "generation_started" in _event_types(context)
    assert "session_saved" in _event_types(context)
    assert dispatcher.busy is False


def test_fixed_output_folder_scenario(tmp_path: Path) -> None:
    out = tmp_path / "out"
    dispatcher, recorder, context = _make(tmp_path)
    dispatcher.handle(CommandMessage("setSettings", {"outputMode": "fixed", "outputFolder": str(out)}))
    assert recorder.of("settings")[-1]["outputFolder"] == str(out)

    dispatcher.handle(CommandMessage("generate", {"prompt": "night scene", "width": 64, "height": 64, "count": 2}))
    assert dispatcher.wait_idle(10)
    paths = recorder.of("generateResult")[0]["paths"]
    session_dir = Path(paths[0]).parent
    assert session_dir.parent == out
    assert SESSION_DIR_RE.match(session_dir.name)

    recorder.messages.clear()
    dispatcher.handle(CommandMessage("getHistory"))
    items = recorder.of("historyUpdate")[0]["items"]
    assert len(items) == 1
    assert items[0]["paths"] == paths
    assert "settings_saved" in _event_types(context)


def test_cancel_before_provider_returns(tmp_path: Path) -> None:
    provider = BlockingProvider()
    dispatcher, recorder, context = _make(tmp_path, factory=_fixed(provider))
    dispatcher.handle(CommandMessage("generate", {"prompt": "p", "width": 32, "height": 32}))
    assert provider.started.wait(5)
    dispatcher.handle(CommandMessage("cancel"))
    assert dispatcher.wait_idle(5)

    stages = [item["stage"] for item in recorder.of("generateProgress")]
    assert stages[-1] == "cancelled"
    assert recorder.of("generateResult") == []
    assert recorder.of("error") == []
    assert _session_dirs(context.history.output_root()) == []
    assert "generation_cancelled" in _event_types(context)


def test_new_generate_cancels_previous(tmp_path: Path) -> None:
    provider = FirstCallBlocks()
    dispatcher, recorder, context = _make(tmp_path, factory=_fixed(provider))
    dispatcher.handle(CommandMessage("generate", {"prompt": "first", "width": 32, "height": 32}))
    assert provider.started.wait(5)
    dispatcher.handle(CommandMessage("generate", {"prompt": "second", "width": 32, "height": 32}))
    assert dispatcher.wait_idle(5)
    assert _wait_for(lambda: any(item["stage"] == "cancelled" for item in recorder.of("generateProgress")))

    assert provider.tokens[0].cancelled is True
    results = recorder.of("generateResult")
    assert len(results) == 1
    assert results[0]["meta"]["model"] == "second"
    assert [record.prompt for record in context.history.list(thumbnails=False)] == ["second"]


def test_cancel_during_save_suppresses_result(tmp_path: Path, monkeypatch) -> None:
    dispatcher, recorder, context = _make(tmp_path)
    real_save = context.history.save

    def save_then_cancel(*args, **kwargs):
        record = real_save(*args, **kwargs)
        dispatcher.handle(CommandMessage("cancel"))
        return record

    monkeypatch.setattr(context.history, "save", save_then_cancel)
    dispatcher.handle(CommandMessage("generate", {"prompt": "late", "width": 32, "height": 32}))
    assert dispatcher.wait_idle(10)

    assert recorder.of("generateResult") == []
    assert recorder.types()[-2:] == ["historyUpdate", "generateProgress"]
    assert recorder.of("generateProgress")[-1]["stage"] == "cancelled"
    assert [item["prompt"] for item in recorder.of("historyUpdate")[-1]["items"]] == ["late"]
    assert "generation_cancelled" in _event_types(context)


def test_provider_failure_becomes_error_message(tmp_path: Path) -> None:
    dispatcher, recorder, context = _make(tmp_path, factory=_fixed(FailingProvider()))
    dispatcher.handle(CommandMessage("generate", {"prompt": "p", "width": 32, "height": 32}))
    assert dispatcher.wait_idle(5)
    errors = recorder.of("error")
    assert len(errors) == 1
    assert errors[0]["message"] == "Generation failed"
    assert "all endpoints failed" in errors[0]["details"]
    assert recorder.of("generateResult") == []
    assert _session_dirs(context.history.output_root()) == []
    assert "generation_failed" in _event_types(context)


def test_handler_errors_never_propagate(tmp_path: Path) -> None:
    dispatcher, recorder, _ = _make(tmp_path)
    dispatcher.handle(CommandMessage("generate", {"prompt": "   "}))
    dispatcher.handle(CommandMessage("capturePreview", {"source": "named", "namedView": "Back", "width": 8, "height": 8}))
    dispatcher.handle(CommandMessage("toggleFavorite", {}))
    dispatcher.handle(CommandMessage("setSettings", "nope"))
    assert [item["message"] for item in recorder.of("error")] == [
        "Generation failed",
        "Capture failed",
        "Could not update favorite",
        "Could not save settings",
    ]
    assert "Prompt" in recorder.of("error")[0]["details"]


def test_unknown_and_malformed_messages(tmp_path: Path) -> None:
    dispatcher, recorder, _ = _make(tmp_path)
    dispatcher.handle(CommandMessage("renderEverything", {"now": True}))
    dispatcher.handle(CommandMessage("cancel"))
    assert recorder.messages == []
    dispatcher.handle_json("not json")
    assert recorder.of("error")[0]["message"] == "Invalid message"
    recorder.messages.clear()
    dispatcher.handle_json(json.dumps({"type": "listNamedViews"}))
    assert recorder.types() == ["namedViews"]


def test_capture_preview_uses_long_edge(tmp_path: Path) -> None:
    dispatcher, recorder, _ = _make(tmp_path)
    dispatcher.handle(
        CommandMessage(
            "capturePreview",
            {"source": "active", "width": 1, "height": 1, "longEdge": 1024, "aspectRatio": "16:9", "transparent": True},
        )
    )
    preview = recorder.of("previewImage")[0]
    assert (preview["width"], preview["height"]) == (1024, 576)
    with Image.open(io.BytesIO(base64.b64decode(preview["base64"]))) as image:
        assert image.size == (1024, 576)
        assert image.mode == "RGBA"

    recorder.messages.clear()
    dispatcher.handle(CommandMessage("capturePreview", {"captureMode": "viewport", "width": 5, "height": 5}))
    preview = recorder.of("previewImage")[0]
    assert (preview["width"], preview["height"]) == (800, 600)


def test_toggle_favorite_and_history_join(tmp_path: Path) -> None:
    dispatcher, recorder, context = _make(tmp_path)
    dispatcher.handle(CommandMessage("generate", {"prompt": "p", "width": 32, "height": 32}))
    assert dispatcher.wait_idle(10)
    session_id = recorder.of("historyUpdate")[0]["items"][0]["id"]

    recorder.messages.clear()
    dispatcher.handle(CommandMessage("toggleFavorite", {"historyId": session_id}))
    dispatcher.handle(CommandMessage("getHistory"))
    assert recorder.of("favoriteStatus") == [{"historyId": session_id, "isFavorite": True}]
    history = recorder.of("historyUpdate")[0]
    assert history["favoriteIds"] == [session_id]
    assert history["items"][0]["isFavorite"] is True

    dispatcher.handle(CommandMessage("toggleFavorite", {"historyId": session_id}))
    assert recorder.of("favoriteStatus")[-1] == {"historyId": session_id, "isFavorite": False}
    assert _event_types(context).count("favorite_toggled") == 2


def test_load_history_images(tmp_path: Path) -> None:
    dispatcher, recorder, _ = _make(tmp_path)
    dispatcher.handle(CommandMessage("generate", {"prompt": "p", "width": 32, "height": 32, "count": 2}))
    assert dispatcher.wait_idle(10)
    item = recorder.of("historyUpdate")[0]["items"][0]

    recorder.messages.clear()
    dispatcher.handle(
        CommandMessage(
            "loadHistoryImages",
            {"paths": item["paths"] + [str(tmp_path / "gone.png")], "screenshotPath": item["screenshotPath"]},
        )
    )
    payload = recorder.of("historyImages")[0]
    assert [base64.b64decode(image) for image in payload["images"]] == [Path(path).read_bytes() for path in item["paths"]]
    assert base64.b64decode(payload["screenshot"]) == Path(item["screenshotPath"]).read_bytes()


def test_open_folder(tmp_path: Path) -> None:
    opened: list[Path] = []
    dispatcher, recorder, _ = _make(tmp_path, opened=opened)
    dispatcher.handle(CommandMessage("openFolder", {"path": str(tmp_path)}))
    dispatcher.handle(CommandMessage("openFolder", {"path": str(tmp_path / "missing")}))
    dispatcher.handle(CommandMessage("openFolder", {}))
    assert opened == [tmp_path]
    assert recorder.messages == []


class _ImageHandler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):  # noqa: A002
        pass

    def do_POST(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        self.rfile.read(length)
        image = encode_png(Image.new("RGB", (16, 16), (0, 128, 255)))
        part = {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(image).decode("ascii")}}
        data = json.dumps({"candidates": [{"content": {"parts": [part]}}], "responseId": "local-1"}).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


@pytest.fixture
def image_server() -> Iterator[str]:
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _ImageHandler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{httpd.server_address[1]}"
    finally:
        httpd.shutdown()
        httpd.server_close()


def test_malformed_proxy_still_generates(tmp_path: Path, image_server: str, monkeypatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("VERTEX_API_KEY", raising=False)
    monkeypatch.setattr(
        "airender_engine.providers.gemini.gemini_endpoint",
        lambda key: Endpoint("gemini", image_server + "/{model}:generateContent?key={key}", key, False),
    )
    dispatcher, recorder, context = _make(tmp_path)
    dispatcher.handle(
        CommandMessage(
            "setSettings",
            {"provider": "gemini", "apiKey": "test-key", "proxyUrl": "http://bad host:99999", "useVertexAI": False},
        )
    )
    assert recorder.of("error") == []
    proxy_handlers = [handler for handler in context.transport.opener().handlers if hasattr(handler, "proxies")]
    assert [handler.proxies for handler in proxy_handlers] == [{}]

    dispatcher.handle(CommandMessage("generate", {"prompt": "p", "width": 32, "height": 32, "count": 2}))
    assert dispatcher.wait_idle(10)
    assert recorder.of("error") == []
    result = recorder.of("generateResult")[0]
    assert len(result["images"]) == 2
    assert result["meta"]["provider"] == "gemini"
    assert result["meta"]["requestId"] == "local-1"
