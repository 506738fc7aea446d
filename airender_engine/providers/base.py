"""Provider base classes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Union

from ..cancellation import Cancelled, CancellationToken
from ..errors import CancelledError

TIERS = ("pro", "flash")
DEFAULT_CONTRAST_ADJUST = -92


@dataclass(frozen=True)
class GenerationOptions:
    tier: str = "pro"
    resolution: str | None = None
    aspect_ratio: str | None = None
    contrast_adjust: int = DEFAULT_CONTRAST_ADJUST

    @property
    def is_pro(self) -> bool:
        return self.tier != "flash"


@dataclass
class GenerateResult:
    images: list[bytes]
    model: str | None = None
    request_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


GenerateOutcome = Union[GenerateResult, Cancelled]


def unwrap(outcome: GenerateOutcome) -> GenerateResult:
    if isinstance(outcome, Cancelled):
        raise CancelledError("Generation cancelled.")
    return outcome


class ImageProvider(Protocol):
    name: str
    requires_credential: bool

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
        ...
