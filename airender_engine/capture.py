"""Viewport capture collaborator.

The host 3D application owns screenshots and named views; the engine only
talks to it through ``ViewportHost``. ``SnapshotFolderHost`` is a headless
stand-in backed by image files so the bridge can run from the command line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from PIL import Image

from .errors import ValidationError
from .imaging import fit_capture

DEFAULT_SIZE = 1024
IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp", ".bmp")

_RATIO_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*[:/xX]\s*(\d+(?:\.\d+)?)\s*$")


class ViewportHost(Protocol):
    def list_named_views(self) -> list[str]:
        ...

    def capture_active(self, width: int, height: int, transparent: bool) -> bytes:
        ...

    def capture_named(self, name: str, width: int, height: int, transparent: bool) -> bytes:
        ...

    def viewport_size(self) -> tuple[int, int]:
        ...

    def scene_path(self) -> Path | None:
        ...


@dataclass(frozen=True)
class CaptureSize:
    width: int
    height: int


def parse_ratio(value: str | None) -> tuple[float, float] | None:
    if not value:
        return None
    match = _RATIO_RE.match(str(value))
    if not match:
        return None
    w = float(match.group(1))
    h = float(match.group(2))
    if w <= 0 or h <= 0:
        return None
    return w, h


def resolve_capture_size(
    *,
    width: int | None,
    height: int | None,
    long_edge: int | None = None,
    aspect_ratio: str | None = None,
    capture_mode: str | None = None,
    viewport_size: tuple[int, int] | None = None,
) -> CaptureSize:
    long_edge = int(long_edge or 0)
    if capture_mode == "viewport" and viewport_size:
        vw, vh = (max(1, int(v)) for v in viewport_size)
        if long_edge > 0:
            scale = long_edge / max(vw, vh)
            return CaptureSize(max(1, round(vw * scale)), max(1, round(vh * scale)))
        return CaptureSize(vw, vh)
    ratio = parse_ratio(aspect_ratio)
    if long_edge > 0 and ratio:
        rw, rh = ratio
        if rw >= rh:
            return CaptureSize(long_edge, max(1, round(long_edge * rh / rw)))
        return CaptureSize(max(1, round(long_edge * rw / rh)), long_edge)
    w = int(width or 0) or DEFAULT_SIZE
    h = int(height or 0) or DEFAULT_SIZE
    if w <= 0 or h <= 0:
        raise ValidationError(f"Invalid capture size {w}x{h}.")
    return CaptureSize(w, h)


class SnapshotFolderHost:
    """Named views are the image files in ``snapshots_dir`` (by stem)."""

    def __init__(
        self,
        snapshots_dir: Path | None = None,
        active_image: Path | None = None,
        scene_file: Path | None = None,
    ) -> None:
        self.snapshots_dir = snapshots_dir
        self.active_image = active_image
        self.scene_file = scene_file

    def list_named_views(self) -> list[str]:
        return sorted(self._named_files().keys(), key=str.lower)

    def capture_active(self, width: int, height: int, transparent: bool) -> bytes:
        path = self.active_image
        if path is None:
            files = self._named_files()
            if not files:
                raise ValidationError("No active viewport image is available.")
            path = files[sorted(files, key=str.lower)[0]]
        return self._render(path, width, height, transparent)

    def capture_named(self, name: str, width: int, height: int, transparent: bool) -> bytes:
        path = self._named_files().get(name)
        if path is None:
            raise ValidationError(f"Named view not found: {name}")
        return self._render(path, width, height, transparent)

    def viewport_size(self) -> tuple[int, int]:
        path = self.active_image
        if path is None or not path.is_file():
            return (DEFAULT_SIZE, DEFAULT_SIZE)
        with Image.open(path) as image:
            return image.size

    def scene_path(self) -> Path | None:
        return self.scene_file

    def _named_files(self) -> dict[str, Path]:
        if self.snapshots_dir is None or not self.snapshots_dir.is_dir():
            return {}
        return {
            entry.stem: entry
            for entry in self.snapshots_dir.iterdir()
            if entry.is_file() and entry.suffix.lower() in IMAGE_SUFFIXES
        }

    def _render(self, path: Path, width: int, height: int, transparent: bool) -> bytes:
        with Image.open(path) as image:
            image.load()
            return fit_capture(image, width, height, transparent)
