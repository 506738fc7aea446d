"""airender CLI entrypoints."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Sequence, TextIO

from .bridge.dispatcher import Dispatcher
from .bridge.messages import CommandMessage
from .capture import SnapshotFolderHost
from .context import AppContext
from .store.settings import Settings
from .utils import load_dotenv

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = "AIRENDER_LOG_LEVEL"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="airender", description="AI render bridge engine")
    parser.add_argument("--home", help="Configuration root (default: $AIRENDER_HOME or ~/.airender)")
    sub = parser.add_subparsers(dest="command")

    bridge = sub.add_parser("bridge", help="Serve JSON-lines commands on stdin/stdout")
    bridge.add_argument("--snapshots", help="Folder of named view images")
    bridge.add_argument("--active", help="Image used as the active viewport")
    bridge.add_argument("--scene", help="Scene file; auto output mode saves beside it")

    history = sub.add_parser("history", help="Print saved sessions as JSON")
    history.add_argument("--scene", help="Scene file; auto output mode reads beside it")
    history.add_argument("--limit", type=int, default=50)

    settings = sub.add_parser("settings", help="Show or update settings")
    settings.add_argument(
        "--set",
        dest="assignments",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Set a settings key (camelCase, e.g. outputMode=fixed)",
    )
    return parser


def _configure_logging() -> None:
    level_name = str(os.getenv(LOG_LEVEL_ENV) or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _optional_path(value: str | None) -> Path | None:
    return Path(value).expanduser() if value else None


def _context(args: argparse.Namespace, host: SnapshotFolderHost | None = None) -> AppContext:
    return AppContext.create(root=_optional_path(args.home), host=host)


def _handle_bridge(args: argparse.Namespace, stdin: TextIO, stdout: TextIO) -> int:
    host = SnapshotFolderHost(
        snapshots_dir=_optional_path(args.snapshots),
        active_image=_optional_path(args.active),
        scene_file=_optional_path(args.scene),
    )
    dispatcher = Dispatcher(_context(args, host))

    def write(message: CommandMessage) -> None:
        stdout.write(message.to_json() + "\n")
        stdout.flush()

    dispatcher.attach(write)
    for line in stdin:
        line = line.strip()
        if line:
            dispatcher.handle_json(line)
    dispatcher.wait_idle()
    return 0


def _handle_history(args: argparse.Namespace, stdout: TextIO) -> int:
    host = SnapshotFolderHost(scene_file=_optional_path(args.scene))
    context = _context(args, host)
    favorite_ids = context.favorites.ids()
    records = context.history.list(limit=args.limit, thumbnails=False)
    items = [record.to_payload(record.id in favorite_ids) for record in records]
    stdout.write(json.dumps(items, indent=2, ensure_ascii=False) + "\n")
    return 0


def _parse_assignments(assignments: Sequence[str]) -> dict[str, Any]:
    updates: dict[str, Any] = {}
    for item in assignments:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got {item!r}")
        updates[key.strip()] = value.strip()
    return updates


def _handle_settings(args: argparse.Namespace, stdout: TextIO) -> int:
    context = _context(args)
    current = context.load_settings()
    if args.assignments:
        try:
            updates = _parse_assignments(args.assignments)
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 2
        current = context.settings.save(Settings.from_payload({**current.to_payload(), **updates}))
        context.events.emit("settings_saved", provider=current.provider, output_mode=current.output_mode)
    payload = current.to_payload()
    for secret in ("apiKey", "vertexApiKey"):
        if payload.get(secret):
            payload[secret] = "***"
    stdout.write(json.dumps(payload, indent=2) + "\n")
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    load_dotenv()
    _configure_logging()
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "bridge":
        raise SystemExit(_handle_bridge(args, sys.stdin, sys.stdout))
    if args.command == "history":
        raise SystemExit(_handle_history(args, sys.stdout))
    if args.command == "settings":
        raise SystemExit(_handle_settings(args, sys.stdout))
    parser.print_help()
    raise SystemExit(1)


if __name__ == "__main__":
    main()
