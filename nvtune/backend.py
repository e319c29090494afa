"""
NVTune - Hardware Backend Interface

Shared data types, the error taxonomy and the capability protocol every
hardware backend implements. Backends are the only code that talks to the
GPU; everything above them (safety, stability testing, auto-tuning) only
sees the types defined here.

Backends:
- NvmlBackend      (nvml_controller.py) - nvidia-ml-py bindings
- CliBackend       (cli_backend.py)     - nvidia-smi / nvidia-settings parsing
- SimulatedBackend (simulated.py)       - in-memory GPU for tests
"""

from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

# GPU index as understood by NVML and nvidia-smi
GpuHandle = int


# =============================================================================
# Errors
# =============================================================================

class NVTuneError(Exception):
    """Base exception for all tuning engine errors."""
    pass


class QueryFailed(NVTuneError):
    """A backend responded, but with an error."""
    pass


class TelemetryUnavailable(QueryFailed):
    """No backend was able to answer a telemetry query."""

    def __init__(self, message: str, attempts: Optional[Dict[str, str]] = None):
        self.attempts: Dict[str, str] = dict(attempts or {})
        if self.attempts:
            details = "; ".join(f"{name}: {err}" for name, err in self.attempts.items())
            message = f"{message} (tried {details})"
        super().__init__(message)


class GpuQueryFailed(TelemetryUnavailable):
    """Raised by the controller facade when every backend failed."""
    pass


class ApplyFailed(NVTuneError):
    """An apply command failed or was rejected by the driver/OS."""
    pass


class UnsafeOperation(NVTuneError):
    """A change was rejected by safety validation and never attempted."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SessionFatal(NVTuneError):
    """An auto-tune session cannot continue at all."""
    pass


class StressToolUnavailable(NVTuneError):
    """No stress workload tool could be found on this system."""
    pass


# =============================================================================
# Data model
# =============================================================================

THERMAL_THROTTLE_REASONS = ("Thermal (SW)", "Thermal (HW)", "HW Slowdown")


@dataclass(frozen=True)
class TelemetrySample:
    """One snapshot of GPU state. Created fresh on every query."""
    temperature_c: int
    power_draw_w: float
    power_limit_w: float
    gpu_clock_mhz: int
    mem_clock_mhz: int
    fan_percent: int
    utilization_percent: int
    # Active throttle reason labels (e.g. "Power (SW)", "Thermal (HW)")
    throttle_reasons: Tuple[str, ...] = ()

    @property
    def is_thermal_throttling(self) -> bool:
        return any(r in THERMAL_THROTTLE_REASONS for r in self.throttle_reasons)


@dataclass(frozen=True)
class ClockOffsets:
    """Current clock offset values."""
    core_offset_mhz: int
    memory_offset_mhz: int


@dataclass(frozen=True)
class PowerLimits:
    """Power limit constraints from the GPU."""
    current_watts: float
    default_watts: float
    min_watts: float
    max_watts: float


@dataclass(frozen=True)
class OverclockTrial:
    """A proposed pair of clock offsets."""
    gpu_offset_mhz: int
    memory_offset_mhz: int

    def __str__(self) -> str:
        return f"core {self.gpu_offset_mhz:+d}MHz / mem {self.memory_offset_mhz:+d}MHz"


STOCK_TRIAL = OverclockTrial(0, 0)


# =============================================================================
# Capability protocol
# =============================================================================

@runtime_checkable
class HardwareBackend(Protocol):
    """Structural protocol for GPU query/control backends."""

    name: str

    def is_available(self) -> bool: ...

    def query(self, gpu: GpuHandle) -> TelemetrySample: ...

    def get_clock_offsets(self, gpu: GpuHandle) -> ClockOffsets: ...

    def get_power_limits(self, gpu: GpuHandle) -> PowerLimits: ...

    def apply_clock_offsets(self, gpu: GpuHandle, gpu_offset_mhz: int, memory_offset_mhz: int) -> None: ...

    def apply_power_limit(self, gpu: GpuHandle, watts: float) -> None: ...

    def set_fan_speed(self, gpu: GpuHandle, percent: int) -> None: ...

    def shutdown(self) -> None: ...
