"""
relay_state.py  –  the relay's only mutable state

One RelayState instance is owned by each RelayServer and handed to its
request handlers.  A single lock guards the whole struct, so a push, a
read and a redirect never interleave, and the pending redirect is taken
(read + cleared) in the same critical section as the push that delivers
it.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Dict, Optional

import config
from errors import InvalidPayload, NoData
from timestamps import require_timestamp
from timing import Clock, age_sec, fmt_age, wall_clock

log = logging.getLogger(__name__)

Record = Dict[str, Any]


class RelayState:
    def __init__(self, clock: Clock = wall_clock,
                 stale_after: Optional[float] = None) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self.stale_after = (stale_after if stale_after is not None
                            else getattr(config, "STALE_AFTER_SEC", 10))

        self._latest: Optional[Record] = None
        self._received_at: Optional[float] = None
        self._pending_redirect: Optional[str] = None

    # ── producer side ──────────────────────────────────────────────────────
    def push(self, record: Any) -> Record:
        """
        Store *record* as the latest value and return the acknowledgment.

        The acknowledgment carries ``redirect`` only when one was pending;
        delivering it consumes it.
        """
        if not isinstance(record, dict):
            raise InvalidPayload("Body must be a JSON object")
        gmt = require_timestamp(record.get("gmt"), "gmt")

        with self._lock:
            self._latest = copy.deepcopy(record)
            self._received_at = self._clock()
            redirect = self._take_redirect()

        ack: Record = {"success": True, "received": gmt}
        if redirect is not None:
            ack["redirect"] = redirect
        return ack

    # ── consumer side ──────────────────────────────────────────────────────
    def read(self) -> Record:
        """Copy of the latest record, annotated with ``warning`` if stale."""
        with self._lock:
            if self._latest is None:
                raise NoData("No timestamp data found")
            out = copy.deepcopy(self._latest)
            received_at = self._received_at

        if received_at is not None:
            age = age_sec(received_at, self._clock)
            if age > self.stale_after:
                out["warning"] = f"Data may be stale ({fmt_age(age)})"
        return out

    def set_redirect(self, timestamp: Any) -> str:
        """Replace any unconsumed redirect with *timestamp*."""
        ts = require_timestamp(timestamp, "timestamp")
        with self._lock:
            replaced = self._pending_redirect
            self._pending_redirect = ts
        if replaced is not None and replaced != ts:
            log.debug("redirect %s replaced unconsumed %s", ts, replaced)
        return ts

    # ── lifecycle / introspection ──────────────────────────────────────────
    def clear(self) -> None:
        with self._lock:
            self._latest = None
            self._received_at = None
            self._pending_redirect = None

    @property
    def pending_redirect(self) -> Optional[str]:
        with self._lock:
            return self._pending_redirect

    @property
    def has_data(self) -> bool:
        with self._lock:
            return self._latest is not None

    # caller must hold self._lock
    def _take_redirect(self) -> Optional[str]:
        redirect, self._pending_redirect = self._pending_redirect, None
        return redirect
