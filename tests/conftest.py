"""Shared fixtures."""

from unittest.mock import patch

import pytest


class FakeClock:
    """Deterministic stand-in for the time module used by poll loops."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    """Patch time in the polling and verification modules."""
    clock = FakeClock()
    with patch("swarm_smoke.polling.time", clock), patch("swarm_smoke.verification.time", clock):
        yield clock
