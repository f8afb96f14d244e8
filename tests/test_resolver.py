from __future__ import annotations

import datetime

import pytest

from errors import NoCandidate
from resolver import (Candidate, Mode, ResolverMemory, distance, resolve,
                      select_mode)

PENALTY = 1_000_000

FEED = [Candidate("a", 0), Candidate("b", 5), Candidate("c", 10)]


def test_forward_mode_prefers_items_at_or_after_target() -> None:
    memory = ResolverMemory(last_target_time=0, last_matched_id="a")

    result = resolve(8, FEED, memory)

    assert result.mode is Mode.FORWARD
    assert result.id == "c"
    assert result.diff == 2
    assert result.locally_minimal
    assert not result.is_settled


def test_backward_jump_falls_back_to_absolute_distance() -> None:
    memory = ResolverMemory(last_target_time=8, last_matched_id="c")

    result = resolve(3, FEED, memory)

    assert result.mode is Mode.ABSOLUTE
    assert result.id == "b"
    assert result.diff == 2


def test_second_identical_resolution_is_settled() -> None:
    memory = ResolverMemory()
    first = resolve(4, FEED, memory)
    assert first.id == "b" and first.locally_minimal and not first.is_settled

    memory.last_matched_id = first.id
    second = resolve(4, FEED, memory)

    assert second.id == "b"
    assert second.is_settled


def test_forward_window_never_looks_before_last_match() -> None:
    feed = [Candidate("a", 0), Candidate("b", 100), Candidate("c", 200), Candidate("d", 5000)]
    memory = ResolverMemory(last_target_time=50, last_matched_id="c")

    # b is literally closest (and at/after 90), but it sits before the last match
    result = resolve(90, feed, memory)

    assert result.id == "c"
    assert result.diff == 110
    assert not result.locally_minimal       # b, just outside the window, scores 10
    assert not result.is_settled


def test_forward_mode_degrades_to_penalised_earlier_item() -> None:
    memory = ResolverMemory(last_target_time=0, last_matched_id=None)

    result = resolve(50, FEED, memory)

    assert result.id == "c"
    assert result.diff == 40 + PENALTY


def test_unknown_last_match_scans_whole_feed() -> None:
    memory = ResolverMemory(last_target_time=0, last_matched_id="gone")

    assert resolve(4, FEED, memory).id == "b"


def test_ties_go_to_the_earliest_item() -> None:
    feed = [Candidate("a", 0), Candidate("b", 10)]

    result = resolve(5, feed, ResolverMemory())

    assert result.id == "a"
    assert result.locally_minimal          # equal, not strictly smaller


def test_untimed_items_are_skipped_and_neighbours_ignored() -> None:
    feed = [Candidate("a", 0), Candidate("x", None), Candidate("c", 10)]

    result = resolve(9, feed, ResolverMemory())

    assert result.id == "c"
    assert result.index == 2
    assert result.locally_minimal


def test_no_timestamped_items_is_no_candidate() -> None:
    with pytest.raises(NoCandidate):
        resolve(5, [Candidate("x"), Candidate("y")], ResolverMemory())
    with pytest.raises(NoCandidate):
        resolve(5, [], ResolverMemory())


def test_empty_forward_window_is_no_candidate() -> None:
    feed = [Candidate("a", 0), Candidate("b", None)]
    memory = ResolverMemory(last_target_time=0, last_matched_id="b")

    with pytest.raises(NoCandidate):
        resolve(5, feed, memory)


def test_accepts_iso_strings_datetimes_and_mappings() -> None:
    base = datetime.datetime(2025, 11, 28, 21, 0, tzinfo=datetime.timezone.utc)
    feed = [
        {"id": "m1", "timestamp": base},
        ("m2", "2025-11-28T21:00:05.000Z"),
        Candidate("m3", base + datetime.timedelta(seconds=10)),
    ]

    result = resolve("2025-11-28T21:00:06.000Z", feed, ResolverMemory())

    assert result.id == "m2"
    assert result.diff == 1000


def test_mode_and_distance_helpers() -> None:
    assert select_mode(5, ResolverMemory()) is Mode.ABSOLUTE
    assert select_mode(5, ResolverMemory(last_target_time=5)) is Mode.ABSOLUTE
    assert select_mode(6, ResolverMemory(last_target_time=5)) is Mode.FORWARD

    assert distance(10, 8, Mode.FORWARD) == 2
    assert distance(5, 8, Mode.FORWARD) == 3 + PENALTY
    assert distance(5, 8, Mode.ABSOLUTE) == 3
    assert distance(5, 8, Mode.FORWARD, penalty=10) == 13
