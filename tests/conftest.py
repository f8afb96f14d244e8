from __future__ import annotations

import pytest


class FakeClock:
    """Callable epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_764_363_600.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
