"""Outbound message buffer used until the UI transport is ready."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable

from .messages import CommandMessage

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 256

Sink = Callable[[CommandMessage], None]


class Outbox:
    """Bounded FIFO in front of the outbound transport.

    Messages posted before ``mark_ready`` are queued; the oldest is dropped
    when the queue is full. ``mark_ready(sink)`` flushes the queue in order
    and then delivers every later message straight to ``sink``.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._lock = threading.Lock()
        self._queue: deque[CommandMessage] = deque()
        self._sink: Sink | None = None
        self.dropped = 0

    @property
    def ready(self) -> bool:
        return self._sink is not None

    def pending(self) -> list[CommandMessage]:
        with self._lock:
            return list(self._queue)

    def post(self, message: CommandMessage) -> None:
        with self._lock:
            sink = self._sink
            if sink is None:
                if len(self._queue) >= self.capacity:
                    dropped = self._queue.popleft()
                    self.dropped += 1
                    logger.warning("Outbox full; dropping queued %s message.", dropped.type)
                self._queue.append(message)
                return
            # Deliver under the lock so messages from worker threads keep order.
            sink(message)

    def mark_ready(self, sink: Sink) -> int:
        """Attach ``sink`` and flush; returns the number of messages flushed."""
        with self._lock:
            flushed = 0
            while self._queue:
                sink(self._queue.popleft())
                flushed += 1
            self._sink = sink
        if flushed:
            logger.info("Flushed %d queued message(s).", flushed)
        return flushed

    def detach(self) -> None:
        with self._lock:
            self._sink = None
