"""
resolver.py

Nearest-timestamp matching of a target instant against an ordered feed.

Two modes
---------
* **forward**  – the target moved past the previous one.  Items at or after
  the target score their plain distance; items before it score
  ``distance + FORWARD_PENALTY_MS``, so any at-or-after item beats every
  earlier one while an earlier item is still chosen when nothing later
  exists yet.  The scan starts at the previously matched item, never before
  it, which is what keeps a slowly advancing target from flickering back.
* **absolute** – first target, same target, or a backward jump (seek /
  rewind): plain ``|t - T|`` over the whole feed.

The winner is then checked against its immediate neighbours in the full
feed.  Near the edge of the forward window a neighbour can score better;
that only means "not verified locally minimal" and is a hint, not an error.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Hashable, Iterable, List, Mapping, Optional

import numpy as np

import config
from errors import InvalidPayload, NoCandidate
from timestamps import to_ms


class Mode(str, enum.Enum):
    FORWARD  = "forward"
    ABSOLUTE = "absolute"


# ── data structures ────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Candidate:
    """One feed item. *timestamp* is epoch ms, a datetime, an ISO string or None."""
    id: Hashable
    timestamp: Any = None


@dataclass
class ResolverMemory:
    last_target_time: Optional[float] = None      # epoch ms
    last_matched_id: Optional[Hashable] = None

    def reset(self) -> None:
        self.last_target_time = None
        self.last_matched_id = None


@dataclass(frozen=True)
class MatchResult:
    id: Hashable
    diff: float              # synthetic distance, penalty included
    index: int
    mode: Mode
    locally_minimal: bool
    is_settled: bool


# ── helpers ────────────────────────────────────────────────────────────────
def _penalty(penalty: Optional[float]) -> float:
    if penalty is None:
        penalty = getattr(config, "FORWARD_PENALTY_MS", 1_000_000)
    return float(penalty)


def as_candidate(item: Any) -> Candidate:
    if isinstance(item, Candidate):
        return item
    if isinstance(item, Mapping):
        return Candidate(item["id"], item.get("timestamp"))
    if isinstance(item, tuple) and len(item) == 2:
        return Candidate(*item)
    # anything else that quacks like a feed item
    return Candidate(getattr(item, "id"), getattr(item, "timestamp", None))


def select_mode(target_time: float, memory: ResolverMemory) -> Mode:
    last = memory.last_target_time
    if last is not None and target_time > last:
        return Mode.FORWARD
    return Mode.ABSOLUTE


def distance(t: float, target_time: float, mode: Mode,
             penalty: Optional[float] = None) -> float:
    if mode is Mode.FORWARD:
        if t >= target_time:
            return t - target_time
        return (target_time - t) + _penalty(penalty)
    return abs(t - target_time)


def _distances(times: np.ndarray, target_time: float, mode: Mode,
               penalty: float) -> np.ndarray:
    """Vector form of distance(); untimed (NaN) items score +inf."""
    if mode is Mode.FORWARD:
        d = np.where(times >= target_time,
                     times - target_time,
                     (target_time - times) + penalty)
    else:
        d = np.abs(times - target_time)
    d[np.isnan(times)] = np.inf
    return d


# ── main entry point ───────────────────────────────────────────────────────
def resolve(target_time: Any,
            candidates: Iterable[Any],
            memory: ResolverMemory,
            penalty: Optional[float] = None) -> MatchResult:
    """
    Pick the single best feed item for *target_time*.

    *candidates* must be in ascending chronological order.  Raises
    NoCandidate when nothing in the scan window carries a timestamp.
    *memory* is only read here; the caller decides what to remember.
    """
    target = to_ms(target_time)
    if target is None:
        raise InvalidPayload(f"Not a target time: {target_time!r}")
    pen = _penalty(penalty)

    items: List[Candidate] = [as_candidate(c) for c in candidates]
    if not items:
        raise NoCandidate("Feed is empty")

    times = np.array(
        [np.nan if (ms := to_ms(c.timestamp)) is None else ms for c in items],
        dtype=np.float64,
    )

    mode = select_mode(target, memory)

    start = 0
    if mode is Mode.FORWARD and memory.last_matched_id is not None:
        for i, c in enumerate(items):
            if c.id == memory.last_matched_id:
                start = i
                break

    d = _distances(times[start:], target, mode, pen)
    if not np.isfinite(d).any():
        raise NoCandidate("No timestamped item to match")

    k    = start + int(np.argmin(d))          # argmin → lowest index on ties
    best = float(d[k - start])

    locally_minimal = True
    for j in (k - 1, k + 1):
        if 0 <= j < len(items) and not np.isnan(times[j]):
            if distance(float(times[j]), target, mode, pen) < best:
                locally_minimal = False

    match_id = items[k].id
    return MatchResult(
        id=match_id,
        diff=best,
        index=k,
        mode=mode,
        locally_minimal=locally_minimal,
        is_settled=(match_id == memory.last_matched_id) and locally_minimal,
    )
