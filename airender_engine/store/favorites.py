"""Favorite session ids."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from ..errors import PersistenceError
from ..utils import read_json, write_json

logger = logging.getLogger(__name__)


class FavoritesStore:
    """A set of session ids persisted as a flat JSON list.

    Ids are soft references: deleting a session directory leaves its id here.
    Every mutation rewrites the whole file.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._ids: set[str] | None = None

    def _ensure_loaded(self) -> set[str]:
        if self._ids is None:
            payload = read_json(self.path, [])
            if not isinstance(payload, list):
                logger.warning("Favorites file %s is not a list; starting empty.", self.path)
                payload = []
            self._ids = {str(item) for item in payload if isinstance(item, (str, int)) and str(item)}
        return self._ids

    def is_favorite(self, history_id: str) -> bool:
        with self._lock:
            return history_id in self._ensure_loaded()

    def ids(self) -> set[str]:
        with self._lock:
            return set(self._ensure_loaded())

    def toggle(self, history_id: str) -> bool:
        with self._lock:
            ids = self._ensure_loaded()
            if history_id in ids:
                updated = ids - {history_id}
                state = False
            else:
                updated = ids | {history_id}
                state = True
            self._write(updated)
            self._ids = updated
            return state

    def _write(self, ids: set[str]) -> None:
        try:
            write_json(self.path, sorted(ids))
        except OSError as exc:
            raise PersistenceError(f"Could not save favorites to {self.path}: {exc}") from exc
