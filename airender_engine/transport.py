"""HTTP transport for cloud providers.

The transport owns a urllib opener configured from the proxy setting. The
opener is built lazily and swapped atomically by ``refresh``; a call that has
already picked up an opener keeps using it, so a rebuild never races with
in-flight requests.

Every request carries the caller's cancellation token. The connection objects
urllib creates are registered with that token so that cancelling shuts down
the socket and a blocked read returns immediately.
"""

from __future__ import annotations

import http.client
import json
import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import HTTPHandler, HTTPSHandler, OpenerDirector, ProxyHandler, Request, build_opener

from .cancellation import CANCELLED, Cancelled, CancellationToken
from .errors import TransportError
from .utils import redact_url

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 300.0

# urllib can only tunnel through HTTP(S) proxies.
_PROXY_SCHEMES = {"http", "https"}


@dataclass
class JsonResponse:
    status: int
    payload: dict[str, Any]
    raw: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def parse_proxy_url(value: str | None) -> str | None:
    """Return a normalised proxy URL, or ``None`` when ``value`` is unusable."""
    text = str(value or "").strip()
    if not text:
        return None
    if "://" not in text:
        text = f"http://{text}"
    try:
        parsed = urlparse(text)
        port = parsed.port
    except ValueError:
        return None
    if parsed.scheme.lower() not in _PROXY_SCHEMES or not parsed.hostname:
        return None
    if any(ch.isspace() for ch in text):
        return None
    if port is not None and not (0 < port < 65536):
        return None
    return text


def build_proxy_handler(proxy_url: str | None) -> ProxyHandler:
    """Explicit proxy, else system/environment discovery, else no proxy."""
    if not str(proxy_url or "").strip():
        return ProxyHandler()
    normalized = parse_proxy_url(proxy_url)
    if normalized is None:
        logger.warning("Ignoring malformed proxy URL %r; connecting without a proxy.", proxy_url)
        return ProxyHandler({})
    return ProxyHandler({"http": normalized, "https": normalized})


class HttpTransport:
    def __init__(
        self,
        proxy_source: Callable[[], str | None] | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._proxy_source = proxy_source or (lambda: None)
        self.timeout_s = timeout_s
        self._lock = threading.Lock()
        self._opener: OpenerDirector | None = None
        self.generation = 0

    def opener(self) -> OpenerDirector:
        with self._lock:
            if self._opener is None:
                self._opener = self._build_opener()
                self.generation += 1
            return self._opener

    def refresh(self) -> None:
        """Rebuild the opener from the current proxy setting."""
        opener = self._build_opener()
        with self._lock:
            self._opener = opener
            self.generation += 1
        logger.info("HTTP transport rebuilt (generation %d).", self.generation)

    def _build_opener(self) -> OpenerDirector:
        try:
            proxy_url = self._proxy_source()
        except Exception as exc:
            logger.warning("Could not read proxy setting (%s); using system proxy discovery.", exc)
            proxy_url = None
        return build_opener(
            build_proxy_handler(proxy_url),
            _CancellableHTTPHandler(),
            _CancellableHTTPSHandler(),
        )

    def post_json(
        self,
        url: str,
        payload: Mapping[str, Any],
        token: CancellationToken | None = None,
        headers: Mapping[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> JsonResponse | Cancelled:
        """POST ``payload`` as JSON.

        Non-success HTTP statuses are returned, not raised. Network failures
        raise ``TransportError``; a fired token yields ``CANCELLED``.
        """
        if token is not None and token.cancelled:
            return CANCELLED
        body = json.dumps(payload).encode("utf-8")
        req_headers = {"Content-Type": "application/json"}
        req_headers.update(headers or {})
        req = Request(url, data=body, headers=req_headers, method="POST")
        setattr(req, "cancel_token", token)
        opener = self.opener()
        timeout = self.timeout_s if timeout_s is None else timeout_s
        try:
            with opener.open(req, timeout=timeout) as response:
                unregister = _register_response(token, response)
                try:
                    status_code = int(getattr(response, "status", 200))
                    raw = response.read().decode("utf-8", errors="replace")
                    response_headers = dict(response.headers.items()) if response.headers else {}
                finally:
                    unregister()
        except HTTPError as exc:
            if token is not None and token.cancelled:
                return CANCELLED
            raw = exc.read().decode("utf-8", errors="replace") if exc.fp else str(exc)
            return JsonResponse(status=int(exc.code), payload=_parse_json(raw), raw=raw)
        except (URLError, OSError, http.client.HTTPException) as exc:
            if token is not None and token.cancelled:
                return CANCELLED
            raise TransportError(f"Request to {redact_url(url)} failed: {exc}", endpoint=redact_url(url)) from exc
        if token is not None and token.cancelled:
            return CANCELLED
        return JsonResponse(status=status_code, payload=_parse_json(raw), raw=raw, headers=response_headers)


def _parse_json(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except ValueError:
        return {"raw": raw}
    return payload if isinstance(payload, dict) else {"raw": payload}


def _register_response(token: CancellationToken | None, response: Any) -> Callable[[], None]:
    if token is None:
        return lambda: None
    return token.register(lambda: _close_quietly(response))


def _close_quietly(resource: Any) -> None:
    try:
        resource.close()
    except Exception:
        logger.debug("close after cancel failed", exc_info=True)


def _abort_connection(conn: http.client.HTTPConnection) -> None:
    sock = getattr(conn, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


def _bind_connection(connection_class: type[http.client.HTTPConnection], req: Request) -> Callable[..., Any]:
    token: CancellationToken | None = getattr(req, "cancel_token", None)

    def factory(host: str, **kwargs: Any) -> http.client.HTTPConnection:
        conn = connection_class(host, **kwargs)
        if token is None:
            return conn
        connect = conn.connect

        def connect_then_check() -> None:
            if token.cancelled:
                raise ConnectionAbortedError("Request cancelled before connecting.")
            connect()
            # The abort callback is a no-op until the socket exists.
            if token.cancelled:
                _abort_connection(conn)
                raise ConnectionAbortedError("Request cancelled while connecting.")

        conn.connect = connect_then_check  # type: ignore[method-assign]
        token.register(lambda: _abort_connection(conn))
        return conn

    return factory


class _CancellableHTTPHandler(HTTPHandler):
    def http_open(self, req: Request) -> Any:
        return self.do_open(_bind_connection(http.client.HTTPConnection, req), req)


class _CancellableHTTPSHandler(HTTPSHandler):
    def https_open(self, req: Request) -> Any:
        return self.do_open(_bind_connection(http.client.HTTPSConnection, req), req, context=self._context)
