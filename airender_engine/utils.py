"""Shared utilities for the airender engine."""

from __future__ import annotations

import base64
import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


CONFIG_HOME_ENV = "AIRENDER_HOME"

_KEY_PARAM_RE = re.compile(r"([?&]key=)[^&]+")


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_local() -> datetime:
    return datetime.now().astimezone()


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def config_root() -> Path:
    override = str(os.getenv(CONFIG_HOME_ENV) or "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".airender"


def read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return default


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def redact_url(url: str) -> str:
    return _KEY_PARAM_RE.sub(r"\1***", url)


def load_dotenv(path: Path | None = None, override: bool = False) -> bool:
    env_path = path or _default_env_path()
    if not env_path.exists():
        return False
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip()
        if value and value[0] == value[-1] and value.startswith(("\"", "'")):
            value = value[1:-1]
        if not override and key in os.environ:
            continue
        os.environ[key] = value
    return True


def _default_env_path() -> Path:
    cwd = Path.cwd()
    for current in (cwd,) + tuple(cwd.parents):
        if (current / "airender_engine").is_dir() or (current / "pyproject.toml").exists():
            env_path = current / ".env"
            if env_path.exists():
                return env_path
            break
    home_env = config_root() / ".env"
    if home_env.exists():
        return home_env
    return cwd / ".env"
