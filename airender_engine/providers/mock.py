"""Mock image provider (offline)."""

from __future__ import annotations

import io
import uuid
from typing import Any

from PIL import Image, ImageDraw, ImageFont

from ..cancellation import CANCELLED, CancellationToken
from ..imaging import encode_png
from .base import GenerateOutcome, GenerateResult, GenerationOptions

_OVERLAY_COLORS = (
    (255, 200, 100, 30),
    (100, 200, 255, 30),
    (200, 100, 255, 30),
    (100, 255, 150, 30),
)


class MockProvider:
    name = "mock"
    requires_credential = False
    model = "mock-v1"

    def __init__(self, initial_delay_s: float = 1.5, per_image_delay_s: float = 0.5) -> None:
        self.initial_delay_s = initial_delay_s
        self.per_image_delay_s = per_image_delay_s

    def generate(
        self,
        prompt: str,
        reference_image: bytes,
        count: int,
        width: int,
        height: int,
        token: CancellationToken,
        options: GenerationOptions | None = None,
    ) -> GenerateOutcome:
        if token.wait(self.initial_delay_s):
            return CANCELLED
        total = max(1, int(count))
        images: list[bytes] = []
        for idx in range(total):
            if token.cancelled:
                return CANCELLED
            images.append(self._render(reference_image, prompt, idx, total, width, height))
            if idx < total - 1 and token.wait(self.per_image_delay_s):
                return CANCELLED
        metadata: dict[str, Any] = {
            "mock": True,
            "tier": (options or GenerationOptions()).tier,
        }
        return GenerateResult(
            images=images,
            model=self.model,
            request_id=uuid.uuid4().hex[:8],
            metadata=metadata,
        )

    def _render(self, reference: bytes, prompt: str, idx: int, total: int, width: int, height: int) -> bytes:
        try:
            with Image.open(io.BytesIO(reference)) as source:
                base = source.convert("RGBA")
        except OSError:
            base = Image.new("RGBA", (max(1, width or 512), max(1, height or 512)), (40, 40, 40, 255))
        overlay = Image.new("RGBA", base.size, _OVERLAY_COLORS[idx % len(_OVERLAY_COLORS)])
        image = Image.alpha_composite(base, overlay)
        draw = ImageDraw.Draw(image)
        font = ImageFont.load_default()
        watermark = f"[Mock] AI render - {idx + 1}/{total}"
        _draw_shadowed(draw, (20, max(0, image.height - 40)), watermark, font)
        caption = prompt if len(prompt) <= 30 else f"{prompt[:30]}..."
        _draw_shadowed(draw, (20, 20), caption, font)
        return encode_png(image.convert("RGB"))


def _draw_shadowed(draw: ImageDraw.ImageDraw, xy: tuple[int, int], text: str, font: Any) -> None:
    x, y = xy
    draw.text((x + 2, y + 2), text, fill=(0, 0, 0, 150), font=font)
    draw.text((x, y), text, fill=(255, 255, 255, 255), font=font)
