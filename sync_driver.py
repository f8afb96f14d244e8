"""
sync_driver.py

Keeps a chronological feed positioned on whatever the relay says "now" is.

Public API
----------
enable() / disable()      start (with one immediate tick) / stop and forget
tick()                    one poll → resolve → maybe-move cycle (TickResult)
hold(True|False)          suspend moves, e.g. while a menu is open
context_changed(ctx)      the user switched feeds
set_interval(sec)         polling period, applied from the next wait
redirect_to(id)           send the producer to a feed item via the relay

Collaborators
-------------
relay            object with ping() → record dict and set_redirect(ts)
                 (RelayClient)
feed(ctx)        ordered sequence of feed items for a context
current_context  () → context id or None
sink(ctx, id)    perform the move; optional sink.cancel() aborts one in flight
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterable, Optional

import config
from errors import NoCandidate, NoData, TransportFailure
from resolver import MatchResult, ResolverMemory, as_candidate, resolve
from timestamps import format_ms, is_valid_timestamp, parse_ms, to_ms

log = logging.getLogger(__name__)

Feed = Callable[[Hashable], Iterable[Any]]
Sink = Callable[[Hashable, Hashable], None]


@dataclass(frozen=True)
class TickResult:
    status: str                       # idle | unchanged | held | no_candidate |
                                      # settled | unchanged_match | moved |
                                      # relay_unavailable | context_changed
    match: Optional[MatchResult] = None
    relay_ok: bool = True


# ── target tracking ────────────────────────────────────────────────────────
class Move(str, enum.Enum):
    UNCHANGED = "unchanged"   # same gmt string as last poll
    JUMP      = "jump"        # first target, or forward past the hysteresis
    NUDGE     = "nudge"       # small forward step or any backward step


class TargetTracker:
    """
    Holds the current target and the one before it.

    A JUMP means the match-in-progress is no longer meaningful; a NUDGE
    keeps it so one minor correction from the producer does not throw
    away the position already reached.
    """

    def __init__(self, hysteresis_ms: Optional[float] = None) -> None:
        self.hysteresis_ms = float(hysteresis_ms if hysteresis_ms is not None
                                   else getattr(config, "HYSTERESIS_MS", 1000))
        self.reset()

    def reset(self) -> None:
        self.last_fetched: Optional[str] = None
        self.target_ms:    Optional[float] = None
        self.previous_ms:  Optional[float] = None

    @property
    def held(self) -> bool:
        return self.target_ms is not None

    def observe(self, gmt: str) -> Move:
        if gmt == self.last_fetched:
            return Move.UNCHANGED

        new_ms = parse_ms(gmt)
        prev   = self.target_ms
        self.last_fetched = gmt
        self.previous_ms, self.target_ms = prev, new_ms

        if prev is None or new_ms > prev + self.hysteresis_ms:
            return Move.JUMP
        return Move.NUDGE


# ── driver ─────────────────────────────────────────────────────────────────
class SyncDriver:
    def __init__(self,
                 relay: Any,
                 feed: Feed,
                 current_context: Callable[[], Optional[Hashable]],
                 sink: Sink,
                 interval: Optional[float] = None,
                 hysteresis_ms: Optional[float] = None,
                 penalty: Optional[float] = None) -> None:
        self._relay = relay
        self._feed = feed
        self._current_context = current_context
        self._sink = sink
        self._penalty = penalty
        self.interval = float(interval if interval is not None
                              else getattr(config, "CHECK_INTERVAL", 2.0))

        self.memory  = ResolverMemory()
        self.tracker = TargetTracker(hysteresis_ms)

        self._enabled = False
        self._held    = False
        self._pending = False         # current target still owes a resolution
        self._context: Optional[Hashable] = None

        self._tick_lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── state toggles ──────────────────────────────────────────────────────
    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        if self._enabled:
            return
        self._enabled = True
        self._context = self._current_context()
        log.info("sync enabled (every %.1fs)", self.interval)

        try:
            self.tick()
        except Exception:
            log.exception("sync tick failed")
        if not self._enabled:         # the first tick may already have turned us off
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sync-driver",
                                        daemon=True)
        self._thread.start()

    def disable(self) -> None:
        if not self._enabled:
            return
        self._enabled = False
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(2.0, self.interval))

        cancel = getattr(self._sink, "cancel", None)
        if callable(cancel):
            cancel()

        with self._tick_lock:
            self.memory.reset()
            self.tracker.reset()
            self._pending = False
            self._context = None
        log.info("sync disabled")

    def hold(self, held: bool = True) -> None:
        self._held = bool(held)

    def set_interval(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError("interval must be positive")
        self.interval = float(seconds)

    def context_changed(self, context_id: Optional[Hashable]) -> None:
        # disable() joins the polling thread, so never call it under _tick_lock
        if self._switch_context(context_id):
            self.disable()

    def _switch_context(self, context_id: Optional[Hashable]) -> bool:
        """Adopt *context_id*; True when sync has to stop because of it."""
        with self._tick_lock:
            if context_id == self._context:
                return False
            log.info("feed context %s -> %s", self._context, context_id)
            self._context = context_id
            if getattr(config, "DISABLE_ON_CONTEXT_CHANGE", True):
                return self._enabled
            self.memory.reset()
            self._pending = self.tracker.held
            return False

    # ── redirect ───────────────────────────────────────────────────────────
    def redirect_to(self, item_id: Hashable,
                    context_id: Optional[Hashable] = None) -> str:
        """
        Ask the producer to seek to a feed item.

        Looks the item up in *context_id* (default: the current context),
        posts its timestamp to the relay's one-shot redirect and returns it.
        Raises NoCandidate for an unknown or untimed item.
        """
        ctx = context_id if context_id is not None else self._current_context()
        if ctx is None:
            raise NoCandidate("no feed context to redirect from")
        for item in self._feed(ctx):
            cand = as_candidate(item)
            if cand.id != item_id:
                continue
            ms = to_ms(cand.timestamp)
            if ms is None:
                raise NoCandidate(f"item {item_id!r} has no timestamp")
            stamp = format_ms(ms)
            self._relay.set_redirect(stamp)
            log.info("redirect to %s (%s)", item_id, stamp)
            return stamp
        raise NoCandidate(f"no item {item_id!r} in {ctx!r}")

    # ── polling ────────────────────────────────────────────────────────────
    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:
                log.exception("sync tick failed")

    def tick(self) -> TickResult:
        with self._tick_lock:
            if not self._enabled:
                return TickResult("idle")

            ctx = self._current_context()
            if ctx is None:
                return TickResult("idle")
            switched = self._context is not None and ctx != self._context
            if not (switched and self._switch_context(ctx)):
                self._context = ctx
                return self._poll(ctx)
        self.disable()
        return TickResult("context_changed")

    def _poll(self, ctx: Hashable) -> TickResult:
        try:
            record = self._relay.ping()
        except (NoData, TransportFailure) as exc:
            log.debug("relay unavailable: %s", exc)
            return self._retry_held(ctx)

        gmt = record.get("gmt") if isinstance(record, dict) else None
        if not is_valid_timestamp(gmt):
            log.warning("relay returned no usable gmt: %r", gmt)
            return self._retry_held(ctx)

        move = self.tracker.observe(gmt)
        if move is Move.UNCHANGED and not self._pending:
            return TickResult("unchanged")
        if move is Move.JUMP:
            self.memory.last_matched_id = None
        if move is not Move.UNCHANGED:
            self.memory.last_target_time = self.tracker.previous_ms
            log.debug("target %s (%s)", gmt, move.value)

        return self._attempt(ctx)

    def _retry_held(self, ctx: Hashable) -> TickResult:
        if not self.tracker.held:
            return TickResult("relay_unavailable", relay_ok=False)
        res = self._attempt(ctx)
        return TickResult(res.status, res.match, relay_ok=False)

    def _attempt(self, ctx: Hashable) -> TickResult:
        # stays set if the hold, the feed or the resolver stops us short
        self._pending = True
        if self._held:
            return TickResult("held")

        try:
            result = resolve(self.tracker.target_ms, self._feed(ctx),
                             self.memory, self._penalty)
        except NoCandidate as exc:
            log.debug("no candidate yet: %s", exc)
            return TickResult("no_candidate")
        self._pending = False

        if result.is_settled:
            return TickResult("settled", result)
        if result.id == self.memory.last_matched_id:
            return TickResult("unchanged_match", result)
        if not self._enabled:          # disabled while the relay call was in flight
            return TickResult("idle", result)

        self.memory.last_matched_id = result.id
        log.info("move to %s (%s, diff %.0f ms%s)", result.id, result.mode.value,
                 result.diff, "" if result.locally_minimal else ", edge of window")
        self._sink(ctx, result.id)
        return TickResult("moved", result)
