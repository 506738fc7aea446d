"""Application context: every long-lived collaborator, built once at startup."""

from __future__ import annotations

import logging
import subprocess
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .capture import SnapshotFolderHost, ViewportHost
from .providers import ProviderRegistry, default_registry
from .runs.events import EventWriter
from .store.favorites import FavoritesStore
from .store.history import HistoryStore
from .store.settings import Settings, SettingsStore
from .transport import HttpTransport
from .utils import config_root, ensure_dir

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"
FAVORITES_FILENAME = "favorites.json"
EVENTS_FILENAME = "events.jsonl"

FolderOpener = Callable[[Path], None]


def open_in_file_browser(path: Path) -> None:
    """Open a directory, or reveal a file, in the platform file browser."""
    target = Path(path)
    if sys.platform.startswith("win"):
        if target.is_dir():
            subprocess.Popen(["explorer", str(target)])
        else:
            subprocess.Popen(["explorer", f"/select,{target}"])
    elif sys.platform == "darwin":
        args = ["open", str(target)] if target.is_dir() else ["open", "-R", str(target)]
        subprocess.Popen(args)
    else:
        subprocess.Popen(["xdg-open", str(target if target.is_dir() else target.parent)])


@dataclass
class AppContext:
    root: Path
    settings: SettingsStore
    favorites: FavoritesStore
    history: HistoryStore
    transport: HttpTransport
    providers: ProviderRegistry
    host: ViewportHost
    events: EventWriter
    open_folder: FolderOpener = field(default=open_in_file_browser)

    def load_settings(self) -> Settings:
        return self.settings.load()

    @classmethod
    def create(
        cls,
        root: Path | None = None,
        host: ViewportHost | None = None,
        open_folder: FolderOpener | None = None,
        registry_factory: Callable[..., ProviderRegistry] = default_registry,
    ) -> "AppContext":
        root = Path(root) if root is not None else config_root()
        ensure_dir(root)
        settings = SettingsStore(root / SETTINGS_FILENAME)
        host = host or SnapshotFolderHost()
        transport = HttpTransport(proxy_source=lambda: settings.load().proxy_url)
        context = cls(
            root=root,
            settings=settings,
            favorites=FavoritesStore(root / FAVORITES_FILENAME),
            history=HistoryStore(settings, fallback_root=root, scene_path=host.scene_path),
            transport=transport,
            providers=registry_factory(settings.load, transport=transport),
            host=host,
            events=EventWriter(root / EVENTS_FILENAME, run_id=uuid.uuid4().hex[:12]),
            open_folder=open_folder or open_in_file_browser,
        )
        logger.debug("Application context ready at %s", root)
        return context
