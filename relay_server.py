#!/usr/bin/env python3
"""
relay_server.py  –  local HTTP relay for the current playback timestamp

Endpoints
---------
GET  /ping      → latest pushed record (JSON), plus "warning" when stale
POST /update    → producer pushes {"gmt": …, …}; ack may carry "redirect"
POST /redirect  → consumer side sets a one-shot {"timestamp": …}
OPTIONS *       → 200, empty body (CORS pre-flight)
anything else   → 404 {"error": "Not found"}

Every response is CORS-permissive; the relay is meant for loopback use
only and does no authentication.
"""

from __future__ import annotations
import errno
import http.server
import json
import logging
import os
import socketserver
import threading
import urllib.parse
from typing import Any, Optional

import psutil

import config
from errors import BindConflict, InvalidPayload, NoData
from relay_state import RelayState

log = logging.getLogger(__name__)

# EADDRINUSE on POSIX, WSAEADDRINUSE on Windows
_ADDR_IN_USE = {errno.EADDRINUSE, 10048}

_MAX_LINE = 65536            # chunk-size and trailer lines


# ── helpers ────────────────────────────────────────────────────────────────
def _port_holder(port: int) -> Optional[int]:
    """Best-effort pid of whoever is listening on *port* (None if unknown)."""
    try:
        for conn in psutil.net_connections(kind="inet"):
            if (conn.laddr and conn.laddr.port == port
                    and conn.status == psutil.CONN_LISTEN):
                return conn.pid
    except (psutil.Error, OSError):
        pass  # needs elevated rights on some platforms
    return None


# ── threaded HTTP server ───────────────────────────────────────────────────
class ReusableTCPServer(socketserver.ThreadingMixIn, http.server.HTTPServer):
    daemon_threads      = True
    # SO_REUSEADDR lets Windows bind over a live listener, so POSIX only
    allow_reuse_address = os.name != "nt"

    state: RelayState


# ── request handler ────────────────────────────────────────────────────────
class RelayHandler(http.server.BaseHTTPRequestHandler):
    server: ReusableTCPServer

    def log_message(self, *args):
        return  # silence default logging; outcomes are logged per route

    def end_headers(self):
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        super().end_headers()

    @property
    def _path(self) -> str:
        return urllib.parse.urlparse(self.path).path

    # ── verbs ──────────────────────────────────────────────────────────────
    def do_OPTIONS(self):
        self.send_response(200)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self):
        if self._path in ("/ping", "/ping/"):
            return self._serve_ping()
        self._serve_not_found()

    def do_POST(self):
        path = self._path
        if path == "/update":
            return self._serve_update()
        if path == "/redirect":
            return self._serve_redirect()
        self._serve_not_found()

    def do_PUT(self):
        self._serve_not_found()

    do_DELETE = do_PATCH = do_HEAD = do_PUT

    # ── helpers for each route ─────────────────────────────────────────────
    def _serve_ping(self):
        try:
            record = self.server.state.read()
        except NoData as exc:
            self._log(404, "no data")
            return self._serve_json(404, {"error": str(exc)})
        except Exception as exc:
            log.exception("GET /ping failed")
            self._log(500, str(exc))
            return self._serve_json(500, {"error": str(exc)})

        detail = record.get("gmt", "")
        if "warning" in record:
            detail = f"{detail}, {record['warning']}"
        self._log(200, detail)
        self._serve_json(200, record, indent=2)

    def _serve_update(self):
        try:
            ack = self.server.state.push(self._read_json())
        except InvalidPayload as exc:
            self._log(400, str(exc))
            return self._serve_json(400, {"error": str(exc)})

        if "redirect" in ack:
            self._log(200, f"{ack['received']}, redirect: {ack['redirect']}")
        else:
            self._log(200, ack["received"])
        self._serve_json(200, ack)

    def _serve_redirect(self):
        try:
            data = self._read_json()
            if not isinstance(data, dict):
                raise InvalidPayload("Body must be a JSON object")
            ts = self.server.state.set_redirect(data.get("timestamp"))
        except InvalidPayload as exc:
            self._log(400, str(exc))
            return self._serve_json(400, {"error": str(exc)})

        self._log(200, ts)
        self._serve_json(200, {"success": True, "redirect": ts})

    def _serve_not_found(self):
        try:
            self._read_json()           # drain so the close is clean
        except InvalidPayload:
            pass
        self._log(404)
        self._serve_json(404, {"error": "Not found"})

    # ── plumbing ───────────────────────────────────────────────────────────
    def _read_json(self) -> Any:
        """Buffer the whole body, then parse it."""
        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            raw = self._read_chunked()
        else:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                raise InvalidPayload("Invalid Content-Length")
            raw = self.rfile.read(length) if length > 0 else b""
        try:
            return json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            raise InvalidPayload("Invalid JSON data")

    def _read_chunked(self) -> bytes:
        """Collect a chunked body up to the zero-size chunk and its trailers."""
        parts = []
        while True:
            line = self.rfile.readline(_MAX_LINE + 1)
            try:
                size = int(line.split(b";", 1)[0].strip(), 16)
            except ValueError:
                self.close_connection = True
                raise InvalidPayload("Invalid chunked encoding")
            if size == 0:
                break
            parts.append(self.rfile.read(size))
            self.rfile.readline(_MAX_LINE + 1)      # CRLF after the chunk data
        while self.rfile.readline(_MAX_LINE + 1) not in (b"\r\n", b"\n", b""):
            pass                                    # trailer fields
        return b"".join(parts)

    def _serve_json(self, status: int, obj: Any, indent: Optional[int] = None):
        b = json.dumps(obj, indent=indent).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(b)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(b)

    def _log(self, status: int, detail: str = ""):
        msg = f"{self.command} {self.path} -> {status}"
        if detail:
            msg += f" ({detail})"
        if status >= 500:
            log.error(msg)
        elif status >= 400:
            log.warning(msg)
        else:
            log.info(msg)


# ── server lifecycle ───────────────────────────────────────────────────────
class RelayServer:
    """
    Owns one RelayState and at most one listening socket.

    start() on the port already in use by this relay is a no-op; start()
    on a different port stops first.  A port taken by someone else raises
    BindConflict and leaves the relay stopped.
    """

    def __init__(self, state: Optional[RelayState] = None,
                 host: Optional[str] = None) -> None:
        self.state = state or RelayState()
        self.host  = host or getattr(config, "RELAY_HOST", "127.0.0.1")
        self.port: Optional[int] = None           # actually bound port

        self._requested: Optional[int] = None
        self._httpd: Optional[ReusableTCPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._httpd is not None

    def start(self, port: Optional[int] = None) -> int:
        if port is None:
            port = getattr(config, "RELAY_PORT", 8080)

        with self._lock:
            if self._httpd is not None and self._requested != port:
                self._stop_locked()
            if self._httpd is not None:
                log.warning("Server already running on port %s", self.port)
                return self.port  # type: ignore[return-value]

            try:
                httpd = ReusableTCPServer((self.host, port), RelayHandler)
            except OSError as exc:
                if exc.errno in _ADDR_IN_USE:
                    log.error("Port %d is already in use. Server not started.", port)
                    raise BindConflict(port, _port_holder(port)) from exc
                log.error("Failed to start server on port %d: %s", port, exc)
                raise

            httpd.state     = self.state
            self._httpd     = httpd
            self._requested = port
            self.port       = httpd.server_address[1]
            self._thread = threading.Thread(
                target=httpd.serve_forever, name="relay-http", daemon=True)
            self._thread.start()

        log.info("Server running on http://%s:%d", self.host, self.port)
        return self.port

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    def restart(self, port: Optional[int] = None) -> int:
        """Release the current port (if any) and bind *port*."""
        self.stop()
        return self.start(port)

    def _stop_locked(self) -> None:
        httpd, self._httpd = self._httpd, None
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self._thread    = None
        self._requested = None
        self.port       = None
        self.state.clear()
        log.info("Server closed")

    def __enter__(self) -> "RelayServer":
        if not self.running:
            self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
