"""Pillow helpers: contrast preprocessing, thumbnails and capture fitting."""

from __future__ import annotations

import io
import logging
from pathlib import Path

from PIL import Image

from .utils import b64encode

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = 128
MIN_CONTRAST = -100
MAX_CONTRAST = 0


def clamp_contrast(percent: int | float | None) -> int:
    if percent is None:
        return 0
    return int(max(MIN_CONTRAST, min(MAX_CONTRAST, int(percent))))


def contrast_lut(percent: int) -> list[int]:
    factor = 1.0 + (clamp_contrast(percent) / 100.0)
    factor = max(0.0, min(1.0, factor))
    return [max(0, min(255, int((value - 128) * factor + 128))) for value in range(256)]


def adjust_contrast(image_bytes: bytes, percent: int) -> bytes:
    """Pull every colour channel toward mid-grey; alpha is left untouched.

    ``new = clamp((old - 128) * (1 + percent / 100) + 128, 0, 255)``. Any
    decoding or encoding failure returns the original bytes unchanged.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as source:
            source.load()
            has_alpha = source.mode in {"RGBA", "LA", "PA"} or "transparency" in source.info
            image = source.convert("RGBA" if has_alpha else "RGB")
        lut = contrast_lut(percent)
        bands = list(image.split())
        for idx in range(3):
            bands[idx] = bands[idx].point(lut)
        adjusted = Image.merge(image.mode, bands)
        return encode_png(adjusted)
    except Exception as exc:
        logger.warning("Contrast adjustment failed (%s); using the original image.", exc)
        return image_bytes


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def make_thumbnail(image_path: Path, size: int = THUMBNAIL_SIZE) -> str | None:
    try:
        with Image.open(image_path) as source:
            image = source.convert("RGB")
        image.thumbnail((size, size))
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=85)
    except Exception as exc:
        logger.debug("Thumbnail failed for %s: %s", image_path, exc)
        return None
    return b64encode(buffer.getvalue())


def fit_capture(image: Image.Image, width: int, height: int, transparent: bool) -> bytes:
    """Scale-to-cover and centre-crop ``image`` to exactly ``width``x``height``."""
    width = max(1, int(width))
    height = max(1, int(height))
    source = image.convert("RGBA")
    scale = max(width / source.width, height / source.height)
    resized = source.resize(
        (max(width, round(source.width * scale)), max(height, round(source.height * scale))),
        Image.LANCZOS,
    )
    left = (resized.width - width) // 2
    top = (resized.height - height) // 2
    cropped = resized.crop((left, top, left + width, top + height))
    if transparent:
        return encode_png(cropped)
    background = Image.new("RGBA", cropped.size, (255, 255, 255, 255))
    background.alpha_composite(cropped)
    return encode_png(background.convert("RGB"))
