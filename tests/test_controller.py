"""Tests for the safety-gated controller facade and retry policy."""

import pytest

from nvtune.backend import ApplyFailed, ClockOffsets, GpuQueryFailed, QueryFailed, UnsafeOperation
from nvtune.controller import SafeGpuController, detect_architecture
from nvtune.retry import ErrorContext, RetryPolicy
from nvtune.safety import SafetyLevel


@pytest.fixture
def controller(telemetry, no_wait_retry) -> SafeGpuController:
    return SafeGpuController(0, telemetry, retry=no_wait_retry)


class TestGetInfo:
    def test_returns_sample(self, sim, controller) -> None:
        sim.temperature_c = 64
        assert controller.get_info().temperature_c == 64

    def test_failure_lists_backends(self, sim, controller) -> None:
        sim.fail_queries = True
        with pytest.raises(GpuQueryFailed) as exc_info:
            controller.get_info()
        assert exc_info.value.attempts == {"simulated": "simulated query failure"}
        assert "simulated" in str(exc_info.value)


class TestApplyOverclock:
    def test_round_trip(self, controller) -> None:
        outcome = controller.apply_overclock_safe(100, 400)
        assert outcome.warning is None
        assert controller.get_clock_offsets() == ClockOffsets(100, 400)

    def test_unsafe_never_reaches_hardware(self, sim, controller) -> None:
        with pytest.raises(UnsafeOperation) as exc_info:
            controller.apply_overclock_safe(600, 0)
        assert "by 100MHz" in exc_info.value.reason
        assert sim.mutation_calls() == []

    def test_critical_temperature_rejects(self, sim, controller) -> None:
        sim.temperature_c = 96
        with pytest.raises(UnsafeOperation):
            controller.apply_overclock_safe(100, 400)
        assert ("apply_clock_offsets", 0, 100, 400) not in sim.mutation_calls()

    def test_warning_reaches_caller(self, sim, controller) -> None:
        sim.temperature_c = 90
        outcome = controller.apply_overclock_safe(100, 0)
        assert outcome.warning is not None
        assert "elevated" in outcome.warning
        assert sim.offsets[0] == (100, 0)

    def test_retries_transient_failures(self, sim, telemetry) -> None:
        sleeps = []
        ctl = SafeGpuController(0, telemetry, retry=RetryPolicy(max_attempts=3, sleep=sleeps.append))
        sim.fail_applies = 2

        ctl.apply_overclock_safe(50, 0)

        assert len(sim.mutation_calls("apply_clock_offsets")) == 3
        assert sleeps == pytest.approx([0.1, 0.2])
        assert sim.offsets[0] == (50, 0)

    def test_gives_up_after_max_attempts(self, sim, controller) -> None:
        sim.fail_all_applies = True
        with pytest.raises(ApplyFailed, match="Failed to apply overclock"):
            controller.apply_overclock_safe(50, 0)
        assert len(sim.mutation_calls("apply_clock_offsets")) == 3


class TestPowerLimit:
    @pytest.mark.parametrize("watts", [250, 300])
    def test_safe(self, sim, controller, watts: int) -> None:
        outcome = controller.set_power_limit_safe(watts)
        assert outcome.warning is None
        assert sim.power_limit_w == watts

    def test_low_limit_warns(self, sim, controller) -> None:
        outcome = controller.set_power_limit_safe(112.5)
        assert "45%" in outcome.warning
        assert sim.power_limit_w == 112.5

    def test_high_limit_rejected(self, sim, controller) -> None:
        with pytest.raises(UnsafeOperation, match="by 30%"):
            controller.set_power_limit_safe(375)
        assert sim.mutation_calls() == []

    def test_percent_is_truncated(self, sim, controller) -> None:
        assert sim.power_limit_w == 250
        with pytest.raises(UnsafeOperation, match="121%"):
            controller.set_power_limit_safe(303)
        assert controller.set_power_limit_safe(302).warning is None

    def test_unknown_current_limit(self, sim, controller) -> None:
        sim.power_limit_w = 0
        with pytest.raises(GpuQueryFailed):
            controller.set_power_limit_safe(200)


class TestResetAndSafety:
    def test_reset_to_stock(self, sim, controller) -> None:
        controller.apply_overclock_safe(100, 400)
        controller.set_power_limit_safe(200)

        controller.reset_to_stock()

        assert sim.offsets[0] == (0, 0)
        assert sim.power_limit_w == sim.default_power_w

    def test_check_safety(self, sim, controller) -> None:
        sim.temperature_c = 88
        assert controller.check_safety().level is SafetyLevel.THERMAL_THROTTLING

    def test_context_manager(self, telemetry) -> None:
        with SafeGpuController(0, telemetry) as ctl:
            assert ctl.gpu == 0


class TestRetryPolicy:
    def test_returns_first_success(self) -> None:
        assert RetryPolicy(sleep=lambda s: None).call(lambda x: x * 2, 21) == 42

    def test_exponential_backoff(self) -> None:
        sleeps = []
        attempts = []

        def flaky() -> str:
            attempts.append(1)
            if len(attempts) < 4:
                raise QueryFailed("busy")
            return "ok"

        policy = RetryPolicy(max_attempts=4, base_delay_s=0.5, sleep=sleeps.append)
        assert policy.call(flaky) == "ok"
        assert sleeps == pytest.approx([0.5, 1.0, 2.0])

    def test_other_errors_propagate_immediately(self) -> None:
        attempts = []

        def broken() -> None:
            attempts.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            RetryPolicy(sleep=lambda s: None).call(broken)
        assert len(attempts) == 1

    def test_needs_an_attempt(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_error_context_message(self) -> None:
        ctx = ErrorContext("set power limit", gpu=1, suggestion="Try running with sudo")
        msg = ctx.to_user_message(ApplyFailed("denied"))
        assert msg.startswith("Failed to set power limit: denied (GPU 1)")
        assert msg.endswith("Suggestion: Try running with sudo")


class TestDetectArchitecture:
    @pytest.mark.parametrize("capability,expected", [
        ((10, 0), "Blackwell"),
        ((8, 9), "Ada Lovelace"),
        ((8, 6), "Ampere"),
        ((8, 0), "Ampere"),
        ((7, 5), "Turing"),
        ((7, 0), "Volta"),
        ((6, 1), "Pascal"),
        ((5, 2), "Maxwell"),
        ((3, 0), "Unknown"),
    ])
    def test_from_compute_capability(self, capability, expected: str) -> None:
        assert detect_architecture("NVIDIA GPU", capability) == expected

    @pytest.mark.parametrize("name,expected", [
        ("NVIDIA GeForce RTX 5090", "Blackwell"),
        ("NVIDIA GeForce RTX 4070", "Ada Lovelace"),
        ("NVIDIA GeForce RTX 3080", "Ampere"),
        ("NVIDIA GeForce GTX 1660", "Turing"),
        ("NVIDIA GeForce GTX 1080", "Pascal"),
        ("NVIDIA GeForce RTX 4050 Laptop GPU", "Ada Lovelace"),
        ("NVIDIA GeForce RTX 3050", "Ampere"),
        ("NVIDIA GeForce GTX 1050 Ti", "Pascal"),
        ("NVIDIA RTX A5000", None),
        ("Quadro", None),
    ])
    def test_from_name(self, name: str, expected) -> None:
        assert detect_architecture(name) == expected
