"""
relay_client.py  –  HTTP client for the timestamp relay

Thin wrapper over a requests.Session.  Every call uses a short timeout;
network errors, timeouts and unexpected statuses become TransportFailure,
a 404 from /ping becomes NoData and a 400 becomes InvalidPayload, so
callers only ever see the relay's own error taxonomy.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

import config
from errors import InvalidPayload, NoData, TransportFailure

log = logging.getLogger(__name__)


class RelayClient:
    def __init__(self, port: Optional[int] = None, host: Optional[str] = None,
                 timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None) -> None:
        self.host = host or getattr(config, "RELAY_HOST", "127.0.0.1")
        self.port = port if port is not None else getattr(config, "RELAY_PORT", 8080)
        self.timeout = timeout if timeout is not None else getattr(config, "CLIENT_TIMEOUT_SEC", 1.5)
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    # ── endpoints ──────────────────────────────────────────────────────────
    def ping(self) -> Dict[str, Any]:
        """Latest record held by the relay (may carry a "warning")."""
        return self._call("GET", "/ping")

    def push(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Push a TimestampRecord; the ack may carry a one-shot "redirect"."""
        return self._call("POST", "/update", record)

    def set_redirect(self, timestamp: str) -> Dict[str, Any]:
        return self._call("POST", "/redirect", {"timestamp": timestamp})

    def close(self) -> None:
        self._session.close()

    # ── plumbing ───────────────────────────────────────────────────────────
    def _call(self, method: str, path: str,
              body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = self.base_url + path
        try:
            r = self._session.request(method, url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportFailure(f"{method} {path}: {exc}") from exc

        try:
            data = r.json()
        except ValueError:
            data = {}
        error = data.get("error") if isinstance(data, dict) else None

        if r.status_code == 404 and path == "/ping":
            raise NoData(error or "No timestamp data found")
        if r.status_code == 400:
            raise InvalidPayload(error or "Rejected by relay")
        if r.status_code != 200 or not isinstance(data, dict):
            raise TransportFailure(f"{method} {path} -> {r.status_code}: {error or r.text[:200]}")
        return data
