"""Engine error taxonomy."""

from __future__ import annotations

from typing import Sequence


class AIRenderError(RuntimeError):
    """Base class for errors raised by the engine."""


class ValidationError(AIRenderError):
    """A request is malformed or cannot be served with the current settings."""


class MissingCredentialError(AIRenderError):
    """The active provider needs an API key and none is configured."""


class TransportError(AIRenderError):
    """One endpoint attempt failed at the network or HTTP status level."""

    def __init__(self, message: str, *, endpoint: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status = status


class ParseError(AIRenderError):
    """An endpoint answered successfully but no image could be extracted."""

    def __init__(self, message: str, *, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint


class CancelledError(AIRenderError):
    """Raised when a cancelled outcome is unwrapped."""


class AllEndpointsFailedError(AIRenderError):
    """Every configured endpoint was tried for one image and none produced it.

    The most recent per-endpoint failure is chained as ``__cause__``.
    """

    def __init__(self, message: str, attempts: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.attempts = list(attempts)


class PersistenceError(AIRenderError):
    """Disk I/O failed while saving engine state."""
