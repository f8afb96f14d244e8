"""
Exception types shared by the relay, its client and the sync driver.

Handlers map them onto HTTP statuses; the sync driver turns the transient
ones (NoData, NoCandidate, TransportFailure) into tick outcomes.
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for every error raised by this package."""


class InvalidPayload(RelayError):
    """A required field is missing or malformed (HTTP 400)."""


class NoData(RelayError):
    """Nothing has been pushed to the relay yet (HTTP 404)."""


class NoCandidate(RelayError):
    """No feed item with a timestamp was available to match against."""


class TransportFailure(RelayError):
    """The relay could not be reached, timed out or answered unexpectedly."""


class BindConflict(RelayError):
    """The relay port is already taken by another socket."""

    def __init__(self, port: int, holder_pid: Optional[int] = None):
        self.port = port
        self.holder_pid = holder_pid
        msg = f"Port {port} is already in use"
        if holder_pid is not None:
            msg += f" (pid {holder_pid})"
        super().__init__(msg)


__all__ = [
    "RelayError",
    "InvalidPayload",
    "NoData",
    "NoCandidate",
    "TransportFailure",
    "BindConflict",
]
