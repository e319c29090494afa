"""
NVTune - Safe GPU Controller

The facade GUI/CLI callers use. Every hardware write is validated by the
SafetyMonitor first; rejected changes never reach the hardware. Accepted
writes go through a bounded retry policy.

Usage:
    with SafeGpuController.create(gpu=0) as ctl:
        outcome = ctl.apply_overclock_safe(100, 400)
        if outcome.warning:
            print(outcome.warning)
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from .backend import (
    ApplyFailed,
    ClockOffsets,
    GpuHandle,
    GpuQueryFailed,
    NVTuneError,
    OverclockTrial,
    TelemetrySample,
    TelemetryUnavailable,
    UnsafeOperation,
)
from .retry import ErrorContext, RetryPolicy
from .safety import SafetyMonitor, SafetyStatus, SafetyThresholds, Validation, ValidationKind
from .telemetry import HardwareTelemetryProvider

logger = logging.getLogger(__name__)

_MODEL_NUMBER = re.compile(r"\b(\d{2})\d{2}\b")

_SERIES_ARCHITECTURE = {
    "50": "Blackwell",
    "40": "Ada Lovelace",
    "30": "Ampere",
    "20": "Turing",
    "16": "Turing",
    "10": "Pascal",
}


@dataclass(frozen=True)
class ApplyOutcome:
    """Result of an accepted hardware write."""
    validation: Validation

    @property
    def warning(self) -> Optional[str]:
        """The validation caveat the caller must show, if any."""
        if self.validation.kind is ValidationKind.WARNING:
            return self.validation.reason
        return None


def detect_architecture(name: str, compute_capability: Optional[Tuple[int, int]] = None) -> Optional[str]:
    """Best-effort GPU architecture from compute capability or marketing name."""
    if compute_capability is not None:
        major, minor = compute_capability
        if (major, minor) == (10, 0):
            return "Blackwell"
        if (major, minor) == (8, 9):
            return "Ada Lovelace"
        if (major, minor) in ((8, 6), (8, 0)):
            return "Ampere"
        if (major, minor) == (7, 5):
            return "Turing"
        if (major, minor) == (7, 0):
            return "Volta"
        if major == 6:
            return "Pascal"
        if major == 5:
            return "Maxwell"
        return "Unknown"

    # Fallback: the series is the first two digits of a four-digit model number
    match = _MODEL_NUMBER.search(name)
    if match is None:
        return None
    return _SERIES_ARCHITECTURE.get(match.group(1))


class SafeGpuController:
    """Safety-gated access to one GPU. One instance per GPU, owned by the caller."""

    def __init__(
        self,
        gpu: GpuHandle,
        telemetry: HardwareTelemetryProvider,
        monitor: Optional[SafetyMonitor] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.gpu = gpu
        self.telemetry = telemetry
        self.monitor = monitor or SafetyMonitor(gpu, telemetry)
        self.retry = retry or RetryPolicy()

    @classmethod
    def create(
        cls,
        gpu: GpuHandle = 0,
        thresholds: Optional[SafetyThresholds] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> "SafeGpuController":
        """Controller over the real hardware (NVML with nvidia-smi fallback)."""
        telemetry = HardwareTelemetryProvider.create_default()
        return cls(gpu, telemetry, SafetyMonitor(gpu, telemetry, thresholds), retry)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.telemetry.shutdown()
        return False

    # =========================================================================
    # Reads
    # =========================================================================

    def get_info(self) -> TelemetrySample:
        """
        Raises:
            GpuQueryFailed: If every backend failed; lists what was tried
        """
        try:
            return self.telemetry.get_telemetry(self.gpu)
        except TelemetryUnavailable as e:
            logger.error("Check NVIDIA driver installation with: nvidia-smi")
            raise GpuQueryFailed(f"Failed to get GPU {self.gpu} information", e.attempts)

    def get_clock_offsets(self) -> ClockOffsets:
        return self.telemetry.get_clock_offsets(self.gpu)

    def check_safety(self) -> SafetyStatus:
        """Current safety status. May trigger emergency mitigation."""
        status = self.monitor.check_temperature()
        logger.info(f"GPU {self.gpu} safety status: {status}")
        return status

    # =========================================================================
    # Writes
    # =========================================================================

    def _apply(self, ctx: ErrorContext, operation, *args) -> None:
        try:
            backend = self.telemetry.backend_for_apply()
            self.retry.call(operation(backend), self.gpu, *args)
        except NVTuneError as e:
            raise ApplyFailed(ctx.to_user_message(e))

    def _report(self, what: str, validation: Validation) -> None:
        if validation.kind is ValidationKind.WARNING:
            logger.warning(f"Warning: {validation.reason}")
            logger.warning(f"Proceeding with {what} anyway...")
        else:
            logger.info(f"{what.capitalize()} validated as safe")

    def apply_overclock_safe(self, gpu_offset_mhz: int, memory_offset_mhz: int) -> ApplyOutcome:
        """
        Validate, then apply clock offsets.

        Raises:
            UnsafeOperation: If validation rejected the offsets
            ApplyFailed: If every apply attempt failed
        """
        trial = OverclockTrial(gpu_offset_mhz, memory_offset_mhz)
        validation = self.monitor.validate_overclock_safe(trial)
        if validation.kind is ValidationKind.UNSAFE:
            raise UnsafeOperation(f"Overclock rejected: {validation.reason}")

        self._report("overclock", validation)
        self._apply(
            ErrorContext("apply overclock", gpu=self.gpu,
                         suggestion="Clock offsets need root (NVML) or Coolbits (nvidia-settings)"),
            lambda b: b.apply_clock_offsets,
            gpu_offset_mhz,
            memory_offset_mhz,
        )
        logger.info(f"Applied overclock: GPU {gpu_offset_mhz:+d} MHz, Memory {memory_offset_mhz:+d} MHz")
        return ApplyOutcome(validation)

    def set_power_limit_safe(self, watts: float) -> ApplyOutcome:
        """
        Validate a power limit, as a percentage of the current limit, then apply it.

        Raises:
            GpuQueryFailed: If the current power limit cannot be read
            UnsafeOperation: If validation rejected the limit
            ApplyFailed: If every apply attempt failed
        """
        current_limit = self.get_info().power_limit_w
        if current_limit <= 0:
            raise GpuQueryFailed(f"GPU {self.gpu} did not report a current power limit")

        # Truncated on purpose: 302 W of 250 W is 120.8% and validates as 120%
        percent = int(watts / current_limit * 100)
        validation = self.monitor.validate_power_limit_safe(percent)
        if validation.kind is ValidationKind.UNSAFE:
            raise UnsafeOperation(f"Power limit rejected: {validation.reason}")

        self._report("power limit", validation)
        self._apply(
            ErrorContext("set power limit", gpu=self.gpu,
                         suggestion="Try running with sudo for power management"),
            lambda b: b.apply_power_limit,
            watts,
        )
        logger.info(f"Power limit set to {watts:.0f} W ({percent}% of {current_limit:.0f} W)")
        return ApplyOutcome(validation)

    def reset_to_stock(self) -> None:
        """
        Zero the clock offsets and restore the default power limit.

        Lowering risk needs no validation, so this bypasses the monitor.
        """
        ctx = ErrorContext("reset GPU to stock", gpu=self.gpu)
        self._apply(ctx, lambda b: b.apply_clock_offsets, 0, 0)

        try:
            default_watts = self.telemetry.get_power_limits(self.gpu).default_watts
        except NVTuneError as e:
            logger.warning(f"Could not read default power limit, leaving it unchanged: {e}")
            return
        self._apply(ctx, lambda b: b.apply_power_limit, default_watts)
        logger.info(f"GPU {self.gpu} reset to stock values")
