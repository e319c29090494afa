"""
NVTune - Benchmark Scoring

The auto-tuner only needs two things from a benchmark: a score it can
compare between settings and a yes/no stability verdict. BenchmarkScorer
describes that contract; WorkloadBenchmark implements it by running a
stress workload and scoring sustained clocks from telemetry.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, runtime_checkable

from .backend import GpuHandle, NVTuneError, QueryFailed, TelemetrySample
from .stress import StressWorkload
from .telemetry import HardwareTelemetryProvider

logger = logging.getLogger(__name__)

# Weights of the total score
CORE_WEIGHT = 0.8
MEMORY_WEIGHT = 0.2


@dataclass(frozen=True)
class BenchmarkResult:
    total_score: float
    core_score: float
    memory_score: float
    min_temp_c: int
    max_temp_c: int
    avg_temp_c: float
    avg_power_w: float
    max_power_w: float
    samples: int
    duration_s: float


@dataclass(frozen=True)
class BenchmarkComparison:
    baseline: BenchmarkResult
    current: BenchmarkResult
    performance_gain: float  # Percentage
    temp_delta: float
    power_delta: float


@runtime_checkable
class BenchmarkScorer(Protocol):
    """Black-box scorer consumed by the auto-tuner."""

    def run_full_benchmark(self, duration_s: float) -> BenchmarkResult: ...

    def run_stability_test(self, duration_s: float) -> bool: ...


def compare_results(baseline: BenchmarkResult, current: BenchmarkResult) -> BenchmarkComparison:
    """Compare two benchmark runs."""
    if baseline.total_score == 0:
        gain = 0.0
    else:
        gain = (current.total_score - baseline.total_score) / baseline.total_score * 100.0
    return BenchmarkComparison(
        baseline=baseline,
        current=current,
        performance_gain=gain,
        temp_delta=current.avg_temp_c - baseline.avg_temp_c,
        power_delta=current.avg_power_w - baseline.avg_power_w,
    )


def score_samples(samples: List[TelemetrySample], duration_s: float) -> BenchmarkResult:
    """
    Turn telemetry collected under load into a score.

    Core score is the utilization-weighted average graphics clock; memory
    score is the average memory clock. Both are scaled to the hundreds.
    """
    if not samples:
        raise QueryFailed("No telemetry samples collected during benchmark")

    n = len(samples)
    core = sum(s.gpu_clock_mhz * s.utilization_percent / 100.0 for s in samples) / n / 10.0
    memory = sum(s.mem_clock_mhz for s in samples) / n / 100.0
    temps = [s.temperature_c for s in samples]
    powers = [s.power_draw_w for s in samples]

    return BenchmarkResult(
        total_score=core * CORE_WEIGHT + memory * MEMORY_WEIGHT,
        core_score=core,
        memory_score=memory,
        min_temp_c=min(temps),
        max_temp_c=max(temps),
        avg_temp_c=sum(temps) / n,
        avg_power_w=sum(powers) / n,
        max_power_w=max(powers),
        samples=n,
        duration_s=duration_s,
    )


class WorkloadBenchmark:
    """Scores the GPU by sampling telemetry while a stress workload runs."""

    def __init__(
        self,
        telemetry: HardwareTelemetryProvider,
        workload: StressWorkload,
        gpu: GpuHandle = 0,
        sample_interval_s: float = 1.0,
        unstable_temp_c: int = 90,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.telemetry = telemetry
        self.workload = workload
        self.gpu = gpu
        self.sample_interval_s = sample_interval_s
        self.unstable_temp_c = unstable_temp_c
        self._clock = clock
        self._sleep = sleep

    def _run_loaded(self, duration_s: float, on_sample: Callable[[TelemetrySample], Optional[str]]) -> Optional[str]:
        """
        Sample telemetry under load until duration_s elapses.

        on_sample may return a failure reason to stop early. Returns that
        reason, or None when the run completed.
        """
        handle = self.workload.start(duration_s)
        try:
            start = self._clock()
            while True:
                elapsed = self._clock() - start
                if elapsed >= duration_s:
                    return None

                failure = on_sample(self.telemetry.get_telemetry(self.gpu))
                if failure:
                    return failure

                code = handle.poll()
                if code is not None and code != 0:
                    return f"stress workload exited with code {code}"

                self._sleep(min(self.sample_interval_s, duration_s - elapsed))
        finally:
            handle.stop()

    def run_full_benchmark(self, duration_s: float) -> BenchmarkResult:
        """
        Raises:
            NVTuneError: If the workload cannot run or telemetry fails
        """
        logger.info(f"Starting GPU benchmark ({duration_s:.0f}s)")
        samples: List[TelemetrySample] = []

        failure = self._run_loaded(duration_s, lambda s: samples.append(s))
        if failure:
            raise QueryFailed(f"Benchmark failed: {failure}")

        result = score_samples(samples, duration_s)
        logger.info(
            f"Benchmark complete: score {result.total_score:.2f} "
            f"(core {result.core_score:.2f}, memory {result.memory_score:.2f}, "
            f"max {result.max_temp_c}°C)"
        )
        return result

    def run_stability_test(self, duration_s: float) -> bool:
        logger.info(f"Starting {duration_s:.0f}s stability test")

        def check(sample: TelemetrySample) -> Optional[str]:
            if sample.is_thermal_throttling:
                return "thermal throttling"
            if sample.temperature_c > self.unstable_temp_c:
                return f"temperature exceeds {self.unstable_temp_c}°C ({sample.temperature_c}°C)"
            return None

        try:
            failure = self._run_loaded(duration_s, check)
        except NVTuneError as e:
            logger.warning(f"Stability test could not complete: {e}")
            return False

        if failure:
            logger.warning(f"Stability issues detected: {failure}")
            return False

        logger.info("Stability test passed")
        return True
