"""
producer.py

Producer side of the relay: turns a player's play-head into an absolute
timestamp, pushes it, and applies any redirect that comes back in the
acknowledgment.

The player is anything with ``get_position_sec()`` and ``seek_to(sec)``
(optionally ``duration`` in seconds), i.e. the same surface a VideoPlayer
exposes.
"""

from __future__ import annotations

import datetime
import logging
import re
import threading
from typing import Any, Callable, Dict, Optional

import config
from errors import InvalidPayload, TransportFailure
from timestamps import format_ms, is_valid_timestamp, parse_ms, to_ms
from timing import Clock, wall_clock, wall_clock_ms

log = logging.getLogger(__name__)

# ?v=<id>, /watch/<id>, /live/<id>, /shorts/<id>
_VIDEO_ID_RES = (
    re.compile(r"[?&]v=([^&#]+)"),
    re.compile(r"/watch/([^/?&#]+)"),
    re.compile(r"/live/([^/?&#]+)"),
    re.compile(r"/shorts/([^/?&#]+)"),
)


def extract_video_id(url: str) -> Optional[str]:
    for pat in _VIDEO_ID_RES:
        m = pat.search(url)
        if m:
            return m.group(1)
    return None


def _start_ms(stream_start: Optional[str]) -> Optional[float]:
    if not stream_start:
        return None
    if is_valid_timestamp(stream_start):
        return parse_ms(stream_start)
    # page metadata often carries an offset form, e.g. "…T20:00:00+00:00"
    try:
        dt = datetime.datetime.fromisoformat(stream_start)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return to_ms(dt)


def playhead_to_gmt(stream_start: Optional[str], position_sec: float,
                    clock: Optional[Clock] = None) -> str:
    """
    Absolute timestamp of *position_sec* into a stream that began at
    *stream_start*.  Without a usable start time, "now" is the best guess.
    """
    start = _start_ms(stream_start)
    if start is None:
        log.warning("Stream start time not available, using current time")
        return format_ms(wall_clock_ms(clock))
    return format_ms(start + position_sec * 1000.0)


def redirect_to_position(redirect_ts: str,
                         stream_start: Optional[str],
                         position_sec: float,
                         duration_sec: Optional[float],
                         clock: Optional[Clock] = None) -> Optional[float]:
    """
    Seek target (seconds) for a redirect, or None if it falls outside the
    media.  With no stream start the target is estimated by offsetting the
    current position by (redirect − now).
    """
    target_ms = parse_ms(redirect_ts)
    start = _start_ms(stream_start)
    if start is not None:
        sec = (target_ms - start) / 1000.0
    else:
        sec = position_sec + (target_ms - wall_clock_ms(clock)) / 1000.0
        log.warning("Using fallback estimation (stream start time not available)")

    upper = duration_sec if duration_sec is not None else float("inf")
    if 0.0 <= sec <= upper:
        return sec
    log.warning("Redirect %s results in invalid video time: %.2fs (duration %s)",
                redirect_ts, sec, duration_sec)
    return None


class ProducerLoop(threading.Thread):
    """
    Pushes the player's position every *interval* seconds and seeks when
    the relay hands back a redirect.
    """

    def __init__(self, client: Any, player: Any,
                 stream_start: Optional[str] = None,
                 video_id: Optional[str] = None,
                 interval: Optional[float] = None,
                 clock: Clock = wall_clock,
                 extra: Optional[Callable[[], Dict[str, Any]]] = None) -> None:
        super().__init__(name="producer", daemon=True)
        self.client = client
        self.player = player
        self.stream_start = stream_start
        self.video_id = video_id
        self.interval = float(interval if interval is not None
                              else getattr(config, "PRODUCER_PUSH_INTERVAL", 2.0))
        self._clock = clock
        self._extra = extra
        self._stop_evt = threading.Event()

    def record(self) -> Dict[str, Any]:
        try:
            pos = float(self.player.get_position_sec())
        except Exception as exc:
            # still push "now" so the consumer sees the producer is alive
            return {"gmt": format_ms(wall_clock_ms(self._clock)),
                    "error": str(exc), "currentTime": None, "isLive": False}

        rec: Dict[str, Any] = {
            "gmt": playhead_to_gmt(self.stream_start, pos, self._clock),
            "currentTime": pos,
            "streamStartTime": self.stream_start,
            "isLive": False,
            "videoId": self.video_id,
        }
        if self._extra:
            rec.update(self._extra())
        return rec

    def push_once(self) -> Optional[float]:
        """Push one record; returns the seek position applied, if any."""
        try:
            ack = self.client.push(self.record())
        except (TransportFailure, InvalidPayload) as exc:
            log.error("push failed: %s", exc)
            return None

        redirect = ack.get("redirect")
        if not redirect:
            return None
        log.info("Redirect received: %s", redirect)
        return self.apply_redirect(redirect)

    def apply_redirect(self, redirect_ts: str) -> Optional[float]:
        if not is_valid_timestamp(redirect_ts):
            log.error("Invalid redirect timestamp: %r", redirect_ts)
            return None
        sec = redirect_to_position(
            redirect_ts, self.stream_start,
            float(self.player.get_position_sec()),
            getattr(self.player, "duration", None),
            self._clock,
        )
        if sec is not None:
            self.player.seek_to(sec)
            log.info("Redirected to video time: %.2fs", sec)
        return sec

    def run(self) -> None:
        self.push_once()
        while not self._stop_evt.wait(self.interval):
            self.push_once()

    def stop(self) -> None:
        self._stop_evt.set()
