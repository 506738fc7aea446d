"""Generation sessions on disk.

Each completed generation becomes one directory named
``<YYYY-mm-dd_HH-MM-SS>_<id>`` holding the output images, the original
capture and a ``metadata.json`` record. Listing re-reads every record and
re-renders thumbnails on each call.
"""

from __future__ import annotations

import json
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from ..errors import PersistenceError
from ..imaging import make_thumbnail
from ..utils import b64encode, now_local
from .settings import Settings, SettingsStore

logger = logging.getLogger(__name__)

RENDERS_DIRNAME = "_AI_Renders"
METADATA_FILENAME = "metadata.json"
SCREENSHOT_FILENAME = "screenshot.png"
HISTORY_LIMIT = 50
SESSION_ID_HEX_CHARS = 12
METADATA_SCHEMA_VERSION = 1


@dataclass
class SessionInfo:
    prompt: str
    source: str = "active"
    named_view: str | None = None
    width: int = 0
    height: int = 0
    provider: str = ""
    model: str | None = None
    request_id: str | None = None


@dataclass
class SessionRecord:
    id: str
    timestamp: str
    prompt: str
    source: str
    named_view: str | None
    width: int
    height: int
    paths: list[str]
    screenshot_path: str | None
    provider: str
    model: str | None = None
    request_id: str | None = None
    directory: str | None = None
    thumbnails: list[str] = field(default_factory=list)

    @property
    def created_at(self) -> datetime:
        return _parse_timestamp(self.timestamp)

    def to_metadata(self) -> dict[str, Any]:
        return {
            "schema_version": METADATA_SCHEMA_VERSION,
            "id": self.id,
            "timestamp": self.timestamp,
            "prompt": self.prompt,
            "source": self.source,
            "namedView": self.named_view,
            "width": self.width,
            "height": self.height,
            "outputPaths": list(self.paths),
            "screenshotPath": self.screenshot_path,
            "provider": self.provider,
            "model": self.model,
            "requestId": self.request_id,
        }

    @classmethod
    def from_metadata(cls, payload: Mapping[str, Any], directory: Path | None = None) -> "SessionRecord":
        session_id = payload.get("id")
        timestamp = payload.get("timestamp")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("metadata missing id")
        if not isinstance(timestamp, str):
            raise ValueError("metadata missing timestamp")
        _parse_timestamp(timestamp)
        paths = payload.get("outputPaths") or payload.get("paths") or []
        if not isinstance(paths, list):
            raise ValueError("outputPaths is not a list")
        return cls(
            id=session_id,
            timestamp=timestamp,
            prompt=str(payload.get("prompt") or ""),
            source=str(payload.get("source") or "active"),
            named_view=payload.get("namedView"),
            width=int(payload.get("width") or 0),
            height=int(payload.get("height") or 0),
            paths=[str(item) for item in paths],
            screenshot_path=payload.get("screenshotPath"),
            provider=str(payload.get("provider") or ""),
            model=payload.get("model"),
            request_id=payload.get("requestId"),
            directory=str(directory) if directory else None,
        )

    def to_payload(self, is_favorite: bool = False) -> dict[str, Any]:
        payload = self.to_metadata()
        payload.pop("schema_version", None)
        payload.pop("outputPaths", None)
        payload["paths"] = list(self.paths)
        payload["thumbnails"] = list(self.thumbnails)
        payload["isFavorite"] = is_favorite
        return payload


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def resolve_output_root(settings: Settings, scene_path: Path | None, fallback_root: Path) -> Path:
    """``fixed`` -> the configured folder; ``auto`` -> beside the scene file."""
    if settings.output_mode == "fixed" and settings.output_folder:
        return Path(settings.output_folder).expanduser()
    if scene_path is not None and str(scene_path):
        return Path(scene_path).expanduser().parent / RENDERS_DIRNAME
    return fallback_root / RENDERS_DIRNAME


class HistoryStore:
    def __init__(
        self,
        settings_store: SettingsStore,
        fallback_root: Path,
        scene_path: Callable[[], Path | None] | None = None,
    ) -> None:
        self.settings_store = settings_store
        self.fallback_root = fallback_root
        self._scene_path = scene_path or (lambda: None)

    def output_root(self) -> Path:
        try:
            scene = self._scene_path()
        except Exception as exc:
            logger.warning("Could not resolve the active scene path: %s", exc)
            scene = None
        return resolve_output_root(self.settings_store.load(), scene, self.fallback_root)

    def save(self, images: Sequence[bytes], original_capture: bytes | None, info: SessionInfo) -> SessionRecord:
        if not images:
            raise PersistenceError("Refusing to save a session without images.")
        root = self.output_root()
        timestamp = now_local()
        session_dir, session_id = self._allocate_dir(root, timestamp)
        try:
            paths: list[str] = []
            for idx, image in enumerate(images, start=1):
                name = "output.png" if len(images) == 1 else f"output_{idx}.png"
                image_path = session_dir / name
                image_path.write_bytes(image)
                paths.append(str(image_path))
            screenshot_path: str | None = None
            if original_capture:
                shot = session_dir / SCREENSHOT_FILENAME
                shot.write_bytes(original_capture)
                screenshot_path = str(shot)
            record = SessionRecord(
                id=session_id,
                timestamp=timestamp.isoformat(),
                prompt=info.prompt,
                source=info.source,
                named_view=info.named_view,
                width=int(info.width),
                height=int(info.height),
                paths=paths,
                screenshot_path=screenshot_path,
                provider=info.provider,
                model=info.model,
                request_id=info.request_id,
                directory=str(session_dir),
            )
            (session_dir / METADATA_FILENAME).write_text(
                json.dumps(record.to_metadata(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as exc:
            shutil.rmtree(session_dir, ignore_errors=True)
            raise PersistenceError(f"Could not save session to {session_dir}: {exc}") from exc
        logger.info("Saved session %s with %d image(s) to %s", session_id, len(paths), session_dir)
        return record

    def _allocate_dir(self, root: Path, timestamp: datetime) -> tuple[Path, str]:
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Could not create output folder {root}: {exc}") from exc
        stamp = timestamp.strftime("%Y-%m-%d_%H-%M-%S")
        for _ in range(5):
            session_id = uuid.uuid4().hex[:SESSION_ID_HEX_CHARS]
            session_dir = root / f"{stamp}_{session_id}"
            try:
                session_dir.mkdir()
            except FileExistsError:
                continue
            except OSError as exc:
                raise PersistenceError(f"Could not create session folder {session_dir}: {exc}") from exc
            return session_dir, session_id
        raise PersistenceError(f"Could not allocate a unique session folder under {root}.")

    def list(self, limit: int = HISTORY_LIMIT, thumbnails: bool = True) -> list[SessionRecord]:
        root = self.output_root()
        if not root.is_dir():
            return []
        records: list[SessionRecord] = []
        try:
            candidates = [entry for entry in root.iterdir() if entry.is_dir()]
        except OSError as exc:
            logger.warning("Could not list %s: %s", root, exc)
            return []
        for session_dir in candidates:
            record = _read_record(session_dir)
            if record is not None:
                records.append(record)
        records.sort(key=lambda item: (item.created_at, item.directory or ""), reverse=True)
        records = records[: max(0, min(limit, HISTORY_LIMIT))]
        if thumbnails:
            for record in records:
                record.thumbnails = [
                    thumb
                    for thumb in (make_thumbnail(Path(path)) for path in record.paths if Path(path).is_file())
                    if thumb
                ]
        return records

    def load_images(self, paths: Sequence[str]) -> list[str]:
        images: list[str] = []
        for path in paths:
            encoded = read_image_b64(path)
            if encoded is not None:
                images.append(encoded)
        return images


def read_image_b64(path: str | Path | None) -> str | None:
    if not path:
        return None
    try:
        return b64encode(Path(path).read_bytes())
    except OSError as exc:
        logger.debug("Skipping unreadable image %s: %s", path, exc)
        return None


def _read_record(session_dir: Path) -> SessionRecord | None:
    metadata_path = session_dir / METADATA_FILENAME
    if not metadata_path.is_file():
        return None
    try:
        payload = json.loads(metadata_path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("metadata is not an object")
        return SessionRecord.from_metadata(payload, session_dir)
    except Exception as exc:
        logger.debug("Skipping malformed session %s: %s", session_dir, exc)
        return None
