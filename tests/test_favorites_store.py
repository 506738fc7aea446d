from __future__ import annotations

import json
from pathlib import Path

import pytest

from airender_engine.errors import PersistenceError
from airender_engine.store.favorites import FavoritesStore


def test_toggle_twice_restores_state(tmp_path: Path) -> None:
    store = FavoritesStore(tmp_path / "favorites.json")
    before = store.is_favorite("abc")
    assert store.toggle("abc") is (not before)
    assert store.toggle("abc") is before
    assert store.is_favorite("abc") is before


def test_every_toggle_rewrites_sorted_list(tmp_path: Path) -> None:
    path = tmp_path / "favorites.json"
    store = FavoritesStore(path)
    store.toggle("zeta")
    store.toggle("alpha")
    assert json.loads(path.read_text(encoding="utf-8")) == ["alpha", "zeta"]
    store.toggle("zeta")
    assert json.loads(path.read_text(encoding="utf-8")) == ["alpha"]

    reloaded = FavoritesStore(path)
    assert reloaded.ids() == {"alpha"}


def test_unreadable_file_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "favorites.json"
    path.write_text('{"not": "a list"}', encoding="utf-8")
    assert FavoritesStore(path).ids() == set()
    path.write_text("garbage", encoding="utf-8")
    assert FavoritesStore(path).ids() == set()


def test_ids_may_reference_missing_sessions(tmp_path: Path) -> None:
    path = tmp_path / "favorites.json"
    path.write_text(json.dumps(["gone-session"]), encoding="utf-8")
    assert FavoritesStore(path).is_favorite("gone-session") is True


def test_failed_write_keeps_previous_state(tmp_path: Path) -> None:
    path = tmp_path / "favorites.json"
    path.mkdir()
    store = FavoritesStore(path)
    with pytest.raises(PersistenceError):
        store.toggle("abc")
    assert store.is_favorite("abc") is False
