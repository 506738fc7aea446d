"""Cooperative cancellation shared by every sub-call of one generate request."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from .errors import CancelledError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Cancelled:
    """Outcome returned instead of a value when the token fired."""

    reason: str = "cancelled"


CANCELLED = Cancelled()


class CancellationToken:
    """A one-shot cancellation flag with abort callbacks.

    Callbacks run on the thread that calls ``cancel``; they are used to tear
    down in-flight sockets so blocked reads return promptly. A token created
    with ``child()`` fires when its parent fires, but can also be cancelled on
    its own without affecting the parent.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            _run_callback(callback)

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancel; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _unregister() -> None:
                    with self._lock:
                        try:
                            self._callbacks.remove(callback)
                        except ValueError:
                            pass

                return _unregister
        _run_callback(callback)
        return lambda: None

    def child(self) -> "CancellationToken":
        token = CancellationToken()
        unregister = self.register(token.cancel)
        token.register(unregister)
        return token

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledError("Operation cancelled.")


def _run_callback(callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception:
        logger.debug("cancellation callback failed", exc_info=True)
