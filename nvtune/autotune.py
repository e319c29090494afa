"""
NVTune - Automated Overclocking

A guarded stepwise ramp, not a search:

  1. Baseline benchmark (fatal on failure)
  2. Stability test at stock settings (unstable platform -> give up)
  3. Ramp the core offset, then the memory offset, keeping the best
     profile by benchmark score
  4. Long stability test of the best profile, with one rollback attempt

All hardware writes go through SafeGpuController, so every step is
validated before it is applied.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Tuple

from .backend import NVTuneError, SessionFatal
from .benchmark import BenchmarkScorer
from .controller import SafeGpuController

logger = logging.getLogger(__name__)

# Hard offset ceilings of the ramp (MHz)
CORE_RAMP_CEILING_MHZ = 300
MEMORY_RAMP_CEILING_MHZ = 1000


@enum.unique
class AutoTuneTarget(enum.Enum):
    MAX_PERFORMANCE = "max_performance"
    BALANCED = "balanced"
    EFFICIENCY = "efficiency"


@enum.unique
class SafetyMode(enum.Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"

    @property
    def step_sizes(self) -> Tuple[int, int]:
        """(core step, memory step) in MHz."""
        return _STEP_SIZES[self]


_STEP_SIZES = {
    SafetyMode.CONSERVATIVE: (10, 50),
    SafetyMode.MODERATE: (25, 100),
    SafetyMode.AGGRESSIVE: (50, 200),
}


@dataclass
class AutoTuneConfig:
    target: AutoTuneTarget = AutoTuneTarget.BALANCED
    safety_mode: SafetyMode = SafetyMode.CONSERVATIVE
    max_temp_c: float = 85.0
    stability_test_duration_s: float = 60.0
    stock_test_duration_s: float = 30.0
    step_test_duration_s: float = 10.0
    benchmark_duration_s: float = 30.0


@dataclass(frozen=True)
class TuningProfile:
    gpu_offset_mhz: int = 0
    memory_offset_mhz: int = 0
    power_limit_percent: int = 100

    def __str__(self) -> str:
        return f"core {self.gpu_offset_mhz:+d}MHz / mem {self.memory_offset_mhz:+d}MHz"


STOCK_PROFILE = TuningProfile()


@dataclass(frozen=True)
class TuningSession:
    """Outcome of one auto-tune run."""
    baseline_score: float
    final_score: float
    final_profile: TuningProfile
    iterations: int
    errors: Tuple[str, ...]
    successful: bool
    elapsed_s: float
    target: AutoTuneTarget = AutoTuneTarget.BALANCED

    @property
    def improvement_percent(self) -> float:
        if self.baseline_score == 0:
            return 0.0
        return (self.final_score - self.baseline_score) / self.baseline_score * 100.0


@dataclass
class _RunState:
    """Mutable bookkeeping of a run in progress."""
    best_profile: TuningProfile
    best_score: float
    iterations: int = 0
    errors: List[str] = field(default_factory=list)


class AutoOverclockOrchestrator:
    """Runs one auto-tune session per call to run_auto_tune()."""

    def __init__(
        self,
        config: AutoTuneConfig,
        controller: SafeGpuController,
        scorer: BenchmarkScorer,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.controller = controller
        self.scorer = scorer
        self._clock = clock

    def step_sizes(self) -> Tuple[int, int]:
        return self.config.safety_mode.step_sizes

    def _is_stable(self, duration_s: float) -> bool:
        # The scorer is a black box; anything it raises counts as instability
        try:
            return self.scorer.run_stability_test(duration_s)
        except Exception as e:
            logger.warning(f"Stability test failed with error: {e}")
            return False

    def _apply(self, profile: TuningProfile, state: _RunState) -> bool:
        try:
            outcome = self.controller.apply_overclock_safe(
                profile.gpu_offset_mhz, profile.memory_offset_mhz
            )
        except NVTuneError as e:
            state.errors.append(f"Failed to apply OC: {e}")
            return False
        if outcome.warning:
            logger.warning(f"Applying {profile} with warning: {outcome.warning}")
        return True

    # =========================================================================
    # Ramp
    # =========================================================================

    def _ramp(
        self,
        label: str,
        state: _RunState,
        step: Callable[[TuningProfile], TuningProfile],
        offset_of: Callable[[TuningProfile], int],
        ceiling_mhz: int,
    ) -> None:
        """Raise one offset step by step until something says stop."""
        logger.info(f"Tuning {label} clock...")
        current = state.best_profile

        while True:
            state.iterations += 1
            current = step(current)
            logger.info(f"Testing {label} {offset_of(current):+d} MHz...")

            if not self._apply(current, state):
                break

            if not self._is_stable(self.config.step_test_duration_s):
                logger.info(f"Unstable at {offset_of(current):+d} MHz, rolling back one step")
                break

            try:
                result = self.scorer.run_full_benchmark(self.config.benchmark_duration_s)
            except Exception as e:
                state.errors.append(f"Benchmark failed: {e}")
                break

            if result.total_score > state.best_score:
                gain = (result.total_score - state.best_score) / state.best_score * 100.0 if state.best_score else 0.0
                logger.info(f"Improved score: {result.total_score:.2f} (+{gain:.1f}%)")
                state.best_score = result.total_score
                state.best_profile = current
            else:
                logger.info(f"No improvement, stopping {label} tuning")
                break

            if result.max_temp_c > self.config.max_temp_c:
                logger.warning(f"Temperature limit reached ({result.max_temp_c}°C)")
                break

            if offset_of(current) >= ceiling_mhz:
                logger.info("Maximum safe offset reached")
                break

    # =========================================================================
    # Session
    # =========================================================================

    def run_auto_tune(self) -> TuningSession:
        """
        Run a full session.

        Raises:
            SessionFatal: If the baseline benchmark fails
        """
        start = self._clock()
        logger.info(
            f"Starting automated overclocking (target: {self.config.target.value}, "
            f"safety: {self.config.safety_mode.value})"
        )

        logger.info("Step 1/4: Measuring baseline performance...")
        try:
            baseline = self.scorer.run_full_benchmark(self.config.benchmark_duration_s)
        except Exception as e:
            raise SessionFatal(f"Baseline benchmark failed: {e}")
        baseline_score = baseline.total_score
        logger.info(f"Baseline score: {baseline_score:.2f}")

        state = _RunState(best_profile=STOCK_PROFILE, best_score=baseline_score)

        logger.info("Step 2/4: Testing stability at stock settings...")
        if not self._is_stable(self.config.stock_test_duration_s):
            state.errors.append("System unstable at stock settings")
            logger.error("System unstable at stock settings, not tuning")
            return self._session(start, state, baseline_score, successful=False)

        core_step, mem_step = self.step_sizes()

        logger.info("Step 3/4: Finding optimal clock speeds...")
        self._ramp(
            "GPU core", state,
            lambda p: TuningProfile(p.gpu_offset_mhz + core_step, p.memory_offset_mhz),
            lambda p: p.gpu_offset_mhz,
            CORE_RAMP_CEILING_MHZ,
        )
        self._ramp(
            "memory", state,
            lambda p: TuningProfile(p.gpu_offset_mhz, p.memory_offset_mhz + mem_step),
            lambda p: p.memory_offset_mhz,
            MEMORY_RAMP_CEILING_MHZ,
        )

        logger.info("Step 4/4: Final stability test...")
        best = state.best_profile
        if not self._validate(best, state):
            logger.warning("Final stability test failed, rolling back...")
            state.errors.append("Final stability test failed")

            best = TuningProfile(
                max(0, best.gpu_offset_mhz - core_step),
                max(0, best.memory_offset_mhz - mem_step),
            )
            if not self._validate(best, state):
                self._reset(state)
                return self._session(start, state, baseline_score, successful=False)

        logger.info("Stability test passed!")
        state.best_profile = best
        return self._session(start, state, baseline_score, successful=True)

    def _validate(self, profile: TuningProfile, state: _RunState) -> bool:
        if not self._apply(profile, state):
            return False
        return self._is_stable(self.config.stability_test_duration_s)

    def _reset(self, state: _RunState) -> None:
        try:
            self.controller.reset_to_stock()
        except NVTuneError as e:
            logger.error(f"Failed to restore stock settings: {e}")
            state.errors.append(f"Failed to restore stock settings: {e}")

    def _session(self, start: float, state: _RunState, baseline_score: float, successful: bool) -> TuningSession:
        # A failed session reports no gain over the baseline
        return TuningSession(
            baseline_score=baseline_score,
            final_score=state.best_score if successful else baseline_score,
            final_profile=state.best_profile if successful else STOCK_PROFILE,
            iterations=state.iterations,
            errors=tuple(state.errors),
            successful=successful,
            elapsed_s=self._clock() - start,
            target=self.config.target,
        )


def format_session(session: TuningSession) -> str:
    """Human-readable summary of a finished session."""
    rule = "━" * 40
    lines = [rule, "Automated Overclocking Complete!", rule]

    if session.successful:
        p = session.final_profile
        lines += [
            "Status: SUCCESS",
            "",
            "Results:",
            f"  Baseline Score:     {session.baseline_score:.2f}",
            f"  Final Score:        {session.final_score:.2f}",
            f"  Improvement:        {session.improvement_percent:+.1f}%",
            "",
            "Optimal Settings:",
            f"  GPU Clock Offset:   {p.gpu_offset_mhz:+d} MHz",
            f"  Memory Offset:      {p.memory_offset_mhz:+d} MHz",
            f"  Power Limit:        {p.power_limit_percent}%",
            "",
            "Statistics:",
            f"  Iterations:         {session.iterations}",
            f"  Time Taken:         {session.elapsed_s / 60.0:.1f} minutes",
        ]
    else:
        lines += [
            "Status: FAILED",
            "",
            "Auto-tuning was unable to find stable overclocking settings.",
        ]

    if session.errors:
        lines += ["", "Errors:"]
        lines += [f"  • {error}" for error in session.errors]

    lines.append(rule)
    return "\n".join(lines)
