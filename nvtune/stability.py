"""
NVTune - Stability Testing

StabilityTester runs one bounded stress trial for a proposed pair of clock
offsets. MaxStableOffsetFinder bisects the offset range using the tester as
its oracle.

Every trial is validated by a SafetyMonitor before anything is written.
Once written, a trial reverts the GPU to zero offsets before returning,
whatever the outcome.
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .backend import (
    GpuHandle,
    HardwareBackend,
    NVTuneError,
    OverclockTrial,
    StressToolUnavailable,
)
from .safety import SafetyMonitor, SafetyThresholds, ValidationKind
from .stress import StressHandle, StressWorkload
from .telemetry import HardwareTelemetryProvider

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 2.0

# Trials are aborted above this temperature regardless of thresholds
DEFAULT_ABORT_TEMP_C = 90

# Bisection ranges (MHz)
CORE_SEARCH_UPPER_MHZ = 500
MEMORY_SEARCH_UPPER_MHZ = 1500


@enum.unique
class StabilityOutcome(enum.Enum):
    STABLE = "stable"
    UNSTABLE = "unstable"
    ABORTED = "aborted"


@dataclass(frozen=True)
class StabilityResult:
    outcome: StabilityOutcome
    reason: str = ""
    duration_s: float = 0.0
    max_temp_c: int = 0
    failed_after_s: float = 0.0

    @classmethod
    def stable(cls, duration_s: float, max_temp_c: int) -> "StabilityResult":
        return cls(StabilityOutcome.STABLE, duration_s=duration_s, max_temp_c=max_temp_c)

    @classmethod
    def unstable(cls, reason: str, failed_after_s: float) -> "StabilityResult":
        return cls(StabilityOutcome.UNSTABLE, reason=reason, failed_after_s=failed_after_s)

    @classmethod
    def aborted(cls, reason: str) -> "StabilityResult":
        return cls(StabilityOutcome.ABORTED, reason=reason)

    @property
    def is_stable(self) -> bool:
        return self.outcome is StabilityOutcome.STABLE

    def __str__(self) -> str:
        if self.outcome is StabilityOutcome.STABLE:
            return f"Stable for {self.duration_s:.0f}s (max {self.max_temp_c}°C)"
        if self.outcome is StabilityOutcome.UNSTABLE:
            return f"Unstable after {self.failed_after_s:.0f}s: {self.reason}"
        return f"Aborted: {self.reason}"


class StabilityTester:
    """
    Applies a trial, stresses the GPU and watches telemetry.

    Trials are serialized per tester: only one may drive the GPU at a time.
    """

    def __init__(
        self,
        backend: HardwareBackend,
        telemetry: HardwareTelemetryProvider,
        workload: StressWorkload,
        gpu: GpuHandle = 0,
        duration_s: float = 60.0,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        abort_temp_c: int = DEFAULT_ABORT_TEMP_C,
        thresholds: Optional[SafetyThresholds] = None,
        monitor: Optional[SafetyMonitor] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.telemetry = telemetry
        self.workload = workload
        self.gpu = gpu
        self.duration_s = duration_s
        self.poll_interval_s = poll_interval_s
        self.abort_temp_c = abort_temp_c
        self.thresholds = thresholds
        self.monitor = monitor or SafetyMonitor(gpu, telemetry, thresholds)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

    def test_stability(self, trial: OverclockTrial, duration_s: Optional[float] = None) -> StabilityResult:
        """
        Run one trial. Offsets are back at zero when this returns.

        A trial the monitor rejects is aborted before anything is written.
        """
        duration = self.duration_s if duration_s is None else duration_s

        with self._lock:
            rejection = self._validate(trial)
            if rejection is not None:
                return self._finish(trial, rejection)

            logger.info(f"Starting stability test: {trial}, {duration:.0f}s")
            handle: Optional[StressHandle] = None
            try:
                try:
                    self.backend.apply_clock_offsets(
                        self.gpu, trial.gpu_offset_mhz, trial.memory_offset_mhz
                    )
                except NVTuneError as e:
                    return self._finish(trial, StabilityResult.aborted(f"Failed to apply trial: {e}"))

                if not self.workload.is_available():
                    return self._finish(trial, StabilityResult.aborted("no stress tool available"))
                try:
                    handle = self.workload.start(duration)
                except StressToolUnavailable as e:
                    return self._finish(trial, StabilityResult.aborted(str(e)))

                return self._finish(trial, self._monitor(handle, duration))
            finally:
                if handle is not None:
                    handle.stop()
                self._revert()

    def _validate(self, trial: OverclockTrial) -> Optional[StabilityResult]:
        try:
            validation = self.monitor.validate_overclock_safe(trial)
        except NVTuneError as e:
            return StabilityResult.aborted(f"Safety validation failed: {e}")

        if validation.kind is ValidationKind.UNSAFE:
            return StabilityResult.aborted(f"Rejected by safety monitor: {validation.reason}")
        if validation.kind is ValidationKind.WARNING:
            logger.warning(f"Warning: {validation.reason}")
        return None

    def _monitor(self, handle: StressHandle, duration: float) -> StabilityResult:
        start = self._clock()
        max_temp = 0

        while True:
            elapsed = self._clock() - start
            if elapsed >= duration:
                return StabilityResult.stable(duration, max_temp)

            try:
                sample = self.telemetry.get_telemetry(self.gpu)
            except NVTuneError as e:
                return StabilityResult.aborted(f"GPU monitoring failed: {e}")

            temp = sample.temperature_c
            max_temp = max(max_temp, temp)

            if self._is_throttling(sample):
                return StabilityResult.unstable("thermal throttling", elapsed)

            if temp > self.abort_temp_c:
                return StabilityResult.aborted(
                    f"Temperature too high: {temp}°C "
                    f"({temp - self.abort_temp_c}°C over the {self.abort_temp_c}°C ceiling)"
                )

            code = handle.poll()
            if code is not None and code != 0:
                return StabilityResult.unstable(f"stress workload exited with code {code}", elapsed)

            self._sleep(min(self.poll_interval_s, duration - elapsed))

    def _is_throttling(self, sample) -> bool:
        if sample.is_thermal_throttling:
            return True
        return self.thresholds is not None and sample.temperature_c >= self.thresholds.temp_warning

    def _revert(self) -> None:
        try:
            self.backend.apply_clock_offsets(self.gpu, 0, 0)
        except NVTuneError as e:
            logger.error(f"Failed to revert GPU {self.gpu} to stock offsets: {e}")

    def _finish(self, trial: OverclockTrial, result: StabilityResult) -> StabilityResult:
        if result.is_stable:
            logger.info(f"{trial}: {result}")
        else:
            logger.warning(f"{trial}: {result}")
        return result


class MaxStableOffsetFinder:
    """
    Bisection search for the largest stable core, then memory, offset.

    Assumes stability is monotonic in offset. Real silicon does not always
    honor that; pass confirm=True to re-test the boundary before trusting it.
    Trials the safety monitor rejects count as not stable, so the result
    never exceeds the configured offset limits.
    """

    def __init__(
        self,
        tester: StabilityTester,
        core_upper_mhz: int = CORE_SEARCH_UPPER_MHZ,
        memory_upper_mhz: int = MEMORY_SEARCH_UPPER_MHZ,
        confirm: bool = False,
    ):
        self.tester = tester
        self.core_upper_mhz = core_upper_mhz
        self.memory_upper_mhz = memory_upper_mhz
        self.confirm = confirm
        self.oracle_calls = 0

    @staticmethod
    def search(low: int, high: int, holds: Callable[[int], bool]) -> Tuple[int, List[int]]:
        """
        Integer bisection for the largest value where holds() is true.

        Returns:
            (result, stable values observed during the search)
        """
        stable_seen = []
        while low < high:
            mid = (low + high + 1) // 2
            if holds(mid):
                stable_seen.append(mid)
                low = mid
            else:
                high = mid - 1
        return low, stable_seen

    def _trial_is_stable(self, trial: OverclockTrial) -> bool:
        self.oracle_calls += 1
        return self.tester.test_stability(trial).is_stable

    def _search_confirmed(self, upper: int, make_trial: Callable[[int], OverclockTrial]) -> int:
        found, stable_seen = self.search(0, upper, lambda v: self._trial_is_stable(make_trial(v)))
        if not self.confirm or found == 0:
            return found

        logger.info(f"Confirming boundary at {found}MHz")
        if self._trial_is_stable(make_trial(found)):
            return found

        fallback = max((v for v in stable_seen if v < found), default=0)
        logger.warning(
            f"Boundary {found}MHz failed confirmation, falling back to {fallback}MHz"
        )
        return fallback

    def find_max_stable_offsets(self) -> Tuple[int, int]:
        """Returns (gpu_offset_mhz, memory_offset_mhz)."""
        logger.info("Finding maximum stable overclock...")

        gpu_offset = self._search_confirmed(
            self.core_upper_mhz, lambda v: OverclockTrial(v, 0)
        )
        logger.info(f"Max stable GPU offset: +{gpu_offset} MHz")

        memory_offset = self._search_confirmed(
            self.memory_upper_mhz, lambda v: OverclockTrial(gpu_offset, v)
        )
        logger.info(f"Max stable memory offset: +{memory_offset} MHz")

        return gpu_offset, memory_offset
