"""Shared fakes: no test needs a real GPU or stress tool."""

from typing import List, Optional

import pytest

from nvtune.backend import StressToolUnavailable
from nvtune.retry import RetryPolicy
from nvtune.simulated import SimulatedBackend
from nvtune.telemetry import HardwareTelemetryProvider


class FakeClock:
    """Monotonic clock that only advances when sleep() is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeHandle:
    """Stress process that keeps running, or exits with `exit_code` on poll N."""

    def __init__(self, exit_code: Optional[int] = None, exit_on_poll: int = 0) -> None:
        self.exit_code = exit_code
        self.exit_on_poll = exit_on_poll
        self.polls = 0
        self.stopped = False

    def poll(self) -> Optional[int]:
        self.polls += 1
        if self.exit_code is not None and self.polls >= self.exit_on_poll:
            return self.exit_code
        return None

    def stop(self) -> None:
        self.stopped = True


class FakeWorkload:
    def __init__(self, available: bool = True, handle: Optional[FakeHandle] = None) -> None:
        self.available = available
        self.handle = handle or FakeHandle()
        self.started: List[float] = []

    def is_available(self) -> bool:
        return self.available

    def start(self, duration_s: float) -> FakeHandle:
        if not self.available:
            raise StressToolUnavailable("no stress tool available")
        self.started.append(duration_s)
        return self.handle


@pytest.fixture
def sim() -> SimulatedBackend:
    return SimulatedBackend()


@pytest.fixture
def telemetry(sim: SimulatedBackend) -> HardwareTelemetryProvider:
    return HardwareTelemetryProvider([sim])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workload() -> FakeWorkload:
    return FakeWorkload()


@pytest.fixture
def no_wait_retry() -> RetryPolicy:
    return RetryPolicy(sleep=lambda s: None)
