"""Tests for stability trials and the max-stable-offset bisection."""

import math

import pytest

from conftest import FakeHandle, FakeWorkload
from nvtune.backend import OverclockTrial
from nvtune.safety import SafetyMonitor, SafetyThresholds
from nvtune.stability import MaxStableOffsetFinder, StabilityOutcome, StabilityResult, StabilityTester


@pytest.fixture
def make_tester(sim, telemetry, workload, clock):
    def make(**kwargs) -> StabilityTester:
        kwargs.setdefault("workload", workload)
        return StabilityTester(
            sim, telemetry, gpu=0, duration_s=10, poll_interval_s=2,
            clock=clock, sleep=clock.sleep, **kwargs,
        )
    return make


class TestStabilityTester:
    def test_stable_run(self, sim, workload, clock, make_tester) -> None:
        result = make_tester().test_stability(OverclockTrial(100, 200))

        assert result.outcome is StabilityOutcome.STABLE
        assert result.duration_s == 10
        assert result.max_temp_c == 60
        assert workload.started == [10]
        assert workload.handle.stopped
        assert clock.now == pytest.approx(10)
        assert sim.mutation_calls("apply_clock_offsets") == [
            ("apply_clock_offsets", 0, 100, 200),
            ("apply_clock_offsets", 0, 0, 0),
        ]

    def test_duration_override(self, workload, make_tester) -> None:
        result = make_tester().test_stability(OverclockTrial(50, 0), duration_s=4)
        assert result.is_stable
        assert workload.started == [4]

    def test_thermal_throttling_is_unstable(self, sim, make_tester) -> None:
        sim.throttle_reasons = ("Thermal (SW)",)
        result = make_tester().test_stability(OverclockTrial(100, 0))

        assert result.outcome is StabilityOutcome.UNSTABLE
        assert result.reason == "thermal throttling"
        assert result.failed_after_s == 0
        assert sim.offsets[0] == (0, 0)

    def test_warning_threshold_counts_as_throttling(self, sim, make_tester) -> None:
        sim.script_temperatures([70, 70, 86])
        result = make_tester(thresholds=SafetyThresholds()).test_stability(OverclockTrial(100, 0))

        assert result.outcome is StabilityOutcome.UNSTABLE
        assert result.failed_after_s == pytest.approx(2)

    def test_temperature_ceiling_aborts(self, sim, make_tester) -> None:
        sim.script_temperatures([60, 92])
        result = make_tester().test_stability(OverclockTrial(100, 0))

        assert result.outcome is StabilityOutcome.ABORTED
        assert "92°C" in result.reason
        assert sim.offsets[0] == (0, 0)

    def test_workload_crash_is_unstable(self, sim, clock, make_tester) -> None:
        workload = FakeWorkload(handle=FakeHandle(exit_code=1, exit_on_poll=2))
        result = make_tester(workload=workload).test_stability(OverclockTrial(200, 0))

        assert result.outcome is StabilityOutcome.UNSTABLE
        assert result.reason == "stress workload exited with code 1"
        assert result.failed_after_s == pytest.approx(2)
        assert sim.offsets[0] == (0, 0)

    def test_clean_early_exit_is_not_a_crash(self, make_tester) -> None:
        workload = FakeWorkload(handle=FakeHandle(exit_code=0, exit_on_poll=1))
        assert make_tester(workload=workload).test_stability(OverclockTrial(50, 0)).is_stable

    def test_apply_failure_aborts_without_workload(self, sim, workload, make_tester) -> None:
        sim.fail_applies = 1
        result = make_tester().test_stability(OverclockTrial(100, 0))

        assert result.outcome is StabilityOutcome.ABORTED
        assert "Failed to apply" in result.reason
        assert workload.started == []
        assert sim.offsets[0] == (0, 0)

    def test_no_stress_tool(self, sim, make_tester) -> None:
        result = make_tester(workload=FakeWorkload(available=False)).test_stability(OverclockTrial(100, 0))

        assert result.outcome is StabilityOutcome.ABORTED
        assert result.reason == "no stress tool available"
        assert sim.offsets[0] == (0, 0)

    def test_telemetry_failure_aborts(self, sim, make_tester) -> None:
        class LosesTelemetry(FakeWorkload):
            def start(self, duration_s: float) -> FakeHandle:
                sim.fail_queries = True
                return super().start(duration_s)

        workload = LosesTelemetry()
        result = make_tester(workload=workload).test_stability(OverclockTrial(100, 0))

        assert result.outcome is StabilityOutcome.ABORTED
        assert "monitoring failed" in result.reason
        assert workload.handle.stopped
        assert sim.offsets[0] == (0, 0)

    def test_revert_failure_does_not_mask_result(self, sim, make_tester) -> None:
        class BreaksRevert(FakeHandle):
            def poll(self):
                sim.fail_all_applies = True
                return None

        workload = FakeWorkload(handle=BreaksRevert())
        result = make_tester(workload=workload).test_stability(OverclockTrial(100, 0))

        assert result.is_stable
        assert sim.mutation_calls("apply_clock_offsets")[-1] == ("apply_clock_offsets", 0, 0, 0)

    def test_revert_runs_on_exception(self, sim, make_tester) -> None:
        class Explodes(FakeHandle):
            def poll(self):
                raise RuntimeError("driver reset")

        workload = FakeWorkload(handle=Explodes())
        with pytest.raises(RuntimeError):
            make_tester(workload=workload).test_stability(OverclockTrial(100, 0))

        assert workload.handle.stopped
        assert sim.offsets[0] == (0, 0)


class TestTrialValidation:
    @pytest.mark.parametrize("trial", [OverclockTrial(501, 0), OverclockTrial(100, 1001)])
    def test_unsafe_trial_never_written(self, sim, workload, make_tester, trial) -> None:
        result = make_tester().test_stability(trial)

        assert result.outcome is StabilityOutcome.ABORTED
        assert "exceeds safe limit" in result.reason
        assert workload.started == []
        assert sim.mutation_calls() == []

    def test_critical_temperature_rejects_trial(self, sim, workload, make_tester) -> None:
        sim.temperature_c = 96
        result = make_tester().test_stability(OverclockTrial(100, 0))

        assert result.outcome is StabilityOutcome.ABORTED
        assert "critical" in result.reason
        assert workload.started == []
        assert ("apply_clock_offsets", 0, 100, 0) not in sim.mutation_calls()

    def test_validation_query_failure_aborts(self, sim, workload, make_tester) -> None:
        sim.fail_queries = True
        result = make_tester().test_stability(OverclockTrial(100, 0))

        assert result.outcome is StabilityOutcome.ABORTED
        assert "Safety validation failed" in result.reason
        assert workload.started == []
        assert sim.mutation_calls() == []

    def test_warning_proceeds(self, sim, make_tester) -> None:
        sim.script_temperatures([87, 60])
        result = make_tester().test_stability(OverclockTrial(100, 0))

        assert result.is_stable
        assert sim.mutation_calls("apply_clock_offsets")[0] == ("apply_clock_offsets", 0, 100, 0)

    def test_uses_given_monitor(self, sim, telemetry, workload, make_tester) -> None:
        monitor = SafetyMonitor(0, telemetry, SafetyThresholds(max_clock_offset_mhz=50))
        result = make_tester(monitor=monitor).test_stability(OverclockTrial(100, 0))

        assert result.outcome is StabilityOutcome.ABORTED
        assert sim.mutation_calls() == []

    def test_finder_stays_within_limits(self, sim, telemetry, make_tester) -> None:
        thresholds = SafetyThresholds()
        finder = MaxStableOffsetFinder(make_tester(thresholds=thresholds))

        gpu_offset, memory_offset = finder.find_max_stable_offsets()

        assert gpu_offset <= thresholds.max_clock_offset_mhz
        assert memory_offset <= thresholds.max_memory_offset_mhz
        assert (gpu_offset, memory_offset) == (500, 1000)

        check = SafetyMonitor(0, telemetry, thresholds)
        written = [
            OverclockTrial(core, memory)
            for _, _, core, memory in sim.mutation_calls("apply_clock_offsets")
        ]
        assert all(check.validate_overclock_safe(t).allows_apply for t in written)


class ScriptedTester:
    """Oracle stable up to a core and memory boundary."""

    def __init__(self, core_limit: int, memory_limit: int) -> None:
        self.core_limit = core_limit
        self.memory_limit = memory_limit
        self.trials = []

    def verdict(self, trial: OverclockTrial) -> bool:
        return trial.gpu_offset_mhz <= self.core_limit and trial.memory_offset_mhz <= self.memory_limit

    def test_stability(self, trial: OverclockTrial) -> StabilityResult:
        self.trials.append(trial)
        if self.verdict(trial):
            return StabilityResult.stable(10, 60)
        return StabilityResult.unstable("artifacts", 3)


class TestMaxStableOffsetFinder:
    def test_search_converges_to_boundary(self) -> None:
        calls = []

        def below_boundary(offset: int) -> bool:
            calls.append(offset)
            return offset <= 237

        result, _ = MaxStableOffsetFinder.search(0, 500, below_boundary)

        assert result == 237
        assert len(calls) <= math.ceil(math.log2(500)) + 1

    @pytest.mark.parametrize("boundary", [0, 1, 250, 499, 500])
    def test_search_edges(self, boundary: int) -> None:
        result, _ = MaxStableOffsetFinder.search(0, 500, lambda v: v <= boundary)
        assert result == boundary

    def test_finds_core_then_memory(self) -> None:
        tester = ScriptedTester(core_limit=237, memory_limit=800)
        finder = MaxStableOffsetFinder(tester)

        assert finder.find_max_stable_offsets() == (237, 800)
        assert finder.oracle_calls == len(tester.trials)

        # Core search runs at memory 0, memory search at the found core offset
        core_trials = [t for t in tester.trials if t.memory_offset_mhz == 0]
        memory_trials = [t for t in tester.trials if t.memory_offset_mhz != 0]
        assert tester.trials[:len(core_trials)] == core_trials
        assert len(core_trials) <= math.ceil(math.log2(500)) + 1
        assert all(t.gpu_offset_mhz == 237 for t in memory_trials)

    def test_confirm_accepts_repeatable_boundary(self) -> None:
        tester = ScriptedTester(core_limit=237, memory_limit=0)
        finder = MaxStableOffsetFinder(tester, confirm=True)

        assert finder.find_max_stable_offsets() == (237, 0)
        assert tester.trials.count(OverclockTrial(237, 0)) == 2

    def test_confirm_falls_back_when_boundary_flakes(self) -> None:
        class Flaky(ScriptedTester):
            def verdict(self, trial: OverclockTrial) -> bool:
                if trial == OverclockTrial(237, 0) and self.trials.count(trial) > 1:
                    return False
                return super().verdict(trial)

        tester = Flaky(core_limit=237, memory_limit=-1)
        finder = MaxStableOffsetFinder(tester, confirm=True)

        # 236 is the largest offset below the boundary seen stable while bisecting
        assert finder.find_max_stable_offsets() == (236, 0)
