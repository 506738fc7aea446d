#!/usr/bin/env python3
"""
Check that the Gemini API and Vertex AI Express endpoints accept our key.

Sends one text-only request to each endpoint in both content shapes (with and
without the ``role`` field) and prints the HTTP status of each, so a bad key,
a proxy problem or a payload-shape mismatch shows up before a render is tried.

Requirements:
  - GEMINI_API_KEY and/or VERTEX_API_KEY (or keys stored in settings.json)

Example:
  python scripts/probe_endpoints.py --model gemini-2.0-flash
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as `python scripts/...`.
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from airender_engine.cancellation import Cancelled
from airender_engine.errors import TransportError
from airender_engine.providers.credentials import resolve_credentials
from airender_engine.providers.google_utils import extract_error_message, gemini_endpoint, vertex_endpoint
from airender_engine.store.settings import SettingsStore
from airender_engine.transport import HttpTransport
from airender_engine.utils import config_root, load_dotenv, redact_url

PROBE_PROMPT = "Reply with a one-line greeting."


def _body(include_role: bool) -> dict:
    content: dict = {"parts": [{"text": PROBE_PROMPT}]}
    if include_role:
        content = {"role": "user", **content}
    return {"contents": [content], "generationConfig": {"temperature": 1.0}}


def main() -> int:
    parser = argparse.ArgumentParser(description="Probe the Gemini / Vertex AI Express endpoints.")
    parser.add_argument("--model", default="gemini-2.0-flash", help="Text model used for the probe")
    parser.add_argument("--timeout", type=float, default=30.0)
    parser.add_argument("--home", help="Configuration root holding settings.json")
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    root = Path(args.home).expanduser() if args.home else config_root()
    settings = SettingsStore(root / "settings.json").load()
    credentials = resolve_credentials(settings)
    endpoints = []
    if credentials.primary:
        endpoints.append(gemini_endpoint(credentials.primary))
    if credentials.secondary:
        endpoints.append(vertex_endpoint(credentials.secondary))
    if not endpoints:
        print("No API key found. Set GEMINI_API_KEY or VERTEX_API_KEY.", file=sys.stderr)
        return 1

    transport = HttpTransport(proxy_source=lambda: settings.proxy_url, timeout_s=args.timeout)
    results = []
    for endpoint in endpoints:
        for include_role in (False, True):
            url = endpoint.url_for(args.model)
            shape = "with role" if include_role else "without role"
            try:
                response = transport.post_json(url, _body(include_role))
            except TransportError as exc:
                results.append({"endpoint": endpoint.name, "shape": shape, "ok": False, "error": str(exc)})
                continue
            if isinstance(response, Cancelled):
                continue
            entry = {"endpoint": endpoint.name, "shape": shape, "url": redact_url(url), "status": response.status}
            entry["ok"] = response.ok
            if not response.ok:
                entry["error"] = extract_error_message(response.payload, response.raw)
            results.append(entry)
    print(json.dumps(results, indent=2))
    return 0 if any(item.get("ok") for item in results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
