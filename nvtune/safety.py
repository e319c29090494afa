"""
NVTune - Hardware Safety Monitor

Temperature state machine, emergency mitigation and validation of proposed
overclock / power changes.

SAFETY NOTES:
- Normal             temp <  temp_warning
- ThermalThrottling  temp_warning <= temp < temp_critical (advisory only)
- EmergencyShutdown  temp >= temp_critical: offsets reset to 0 and fans
                     forced to 100%, exactly once per session
- The emergency latch is never cleared. A new SafetyMonitor (new session)
  is required to re-arm mitigation.
"""

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from .backend import GpuHandle, NVTuneError, OverclockTrial, QueryFailed
from .telemetry import HardwareTelemetryProvider

logger = logging.getLogger(__name__)

# Fixed policy: power limits below this share of the current limit only
# produce a warning. Not derived from SafetyThresholds.
MIN_POWER_LIMIT_PERCENT = 50

# Fan recommendation while throttling ramps from this floor to 100%
THROTTLE_FAN_FLOOR_PERCENT = 70

EMERGENCY_FAN_PERCENT = 100


@dataclass(frozen=True)
class SafetyThresholds:
    """Per-GPU safety limits. Immutable once a monitor is built."""
    # Critical temperature (°C) - emergency mitigation
    temp_critical: int = 95
    # Warning temperature (°C) - thermal throttling state
    temp_warning: int = 85
    # Maximum power limit as percentage of the current limit
    max_power_limit_percent: int = 120
    # Minimum fan speed when GPU is active (%)
    min_fan_speed_percent: int = 20
    # Maximum absolute clock offsets (MHz)
    max_clock_offset_mhz: int = 500
    max_memory_offset_mhz: int = 1000

    def __post_init__(self):
        if self.temp_warning >= self.temp_critical:
            raise ValueError(
                f"temp_warning ({self.temp_warning}) must be below "
                f"temp_critical ({self.temp_critical})"
            )


# =============================================================================
# Result types
# =============================================================================

@enum.unique
class SafetyLevel(enum.IntEnum):
    """Ordered by severity."""
    NORMAL = 0
    THERMAL_THROTTLING = 1
    EMERGENCY_SHUTDOWN = 2


@dataclass(frozen=True)
class SafetyStatus:
    level: SafetyLevel
    temperature_c: int

    @classmethod
    def normal(cls, temp: int) -> "SafetyStatus":
        return cls(SafetyLevel.NORMAL, temp)

    @classmethod
    def throttling(cls, temp: int) -> "SafetyStatus":
        return cls(SafetyLevel.THERMAL_THROTTLING, temp)

    @classmethod
    def emergency(cls, temp: int) -> "SafetyStatus":
        return cls(SafetyLevel.EMERGENCY_SHUTDOWN, temp)

    def __str__(self) -> str:
        label = {
            SafetyLevel.NORMAL: "Normal",
            SafetyLevel.THERMAL_THROTTLING: "ThermalThrottling",
            SafetyLevel.EMERGENCY_SHUTDOWN: "EmergencyShutdown",
        }[self.level]
        return f"{label} ({self.temperature_c}°C)"


@enum.unique
class ValidationKind(enum.Enum):
    SAFE = "safe"
    WARNING = "warning"
    UNSAFE = "unsafe"


@dataclass(frozen=True)
class Validation:
    """Outcome of validating an overclock or power change."""
    kind: ValidationKind
    reason: str = ""

    @classmethod
    def safe(cls) -> "Validation":
        return cls(ValidationKind.SAFE)

    @classmethod
    def warning(cls, reason: str) -> "Validation":
        return cls(ValidationKind.WARNING, reason)

    @classmethod
    def unsafe(cls, reason: str) -> "Validation":
        return cls(ValidationKind.UNSAFE, reason)

    @property
    def allows_apply(self) -> bool:
        return self.kind is not ValidationKind.UNSAFE


def recommended_fan_speed(temp: int, thresholds: SafetyThresholds) -> int:
    """Fan speed to suggest while throttling, linear toward 100% at critical."""
    span = thresholds.temp_critical - thresholds.temp_warning
    fraction = (temp - thresholds.temp_warning) / span
    increase = int(fraction * (100 - THROTTLE_FAN_FLOOR_PERCENT))
    return min(100, THROTTLE_FAN_FLOOR_PERCENT + max(0, increase))


# =============================================================================
# Monitor
# =============================================================================

class SafetyMonitor:
    """
    Threshold evaluator for one GPU.

    Holds the only mutable session state of the engine: the emergency latch.
    The latch is guarded by a lock so a BackgroundSafetyMonitor thread and
    the interactive controller can share one monitor.
    """

    def __init__(
        self,
        gpu: GpuHandle,
        telemetry: HardwareTelemetryProvider,
        thresholds: Optional[SafetyThresholds] = None,
    ):
        self.gpu = gpu
        self.thresholds = thresholds or SafetyThresholds()
        self._telemetry = telemetry
        self._latch_lock = threading.Lock()
        self._emergency_triggered = False

    @property
    def emergency_triggered(self) -> bool:
        with self._latch_lock:
            return self._emergency_triggered

    def check_temperature(self) -> SafetyStatus:
        """
        Classify the current GPU temperature and run side effects.

        Raises:
            QueryFailed: If the temperature cannot be read
        """
        try:
            temp = self._telemetry.get_telemetry(self.gpu).temperature_c
        except QueryFailed as e:
            raise QueryFailed(f"Failed to read temperature of GPU {self.gpu}: {e}")

        return self.evaluate(temp)

    def evaluate(self, temp: int) -> SafetyStatus:
        """Run the state machine for an already-read temperature."""
        if temp >= self.thresholds.temp_critical:
            self.trigger_emergency_shutdown(temp)
            return SafetyStatus.emergency(temp)

        if temp >= self.thresholds.temp_warning:
            self._advise_throttling(temp)
            return SafetyStatus.throttling(temp)

        return SafetyStatus.normal(temp)

    def _advise_throttling(self, temp: int) -> None:
        logger.warning(
            f"GPU {self.gpu} temperature high: {temp}°C "
            f"(warning: {self.thresholds.temp_warning}°C)"
        )
        # Advisory only, fan speed is left to the caller
        logger.warning(
            f"Recommended fan speed: {recommended_fan_speed(temp, self.thresholds)}%"
        )

    def trigger_emergency_shutdown(self, temp: int) -> bool:
        """
        Reset offsets and max the fans, once per session.

        Returns:
            True if mitigation ran on this call, False if already latched
        """
        with self._latch_lock:
            if self._emergency_triggered:
                return False
            self._emergency_triggered = True

            logger.error(
                f"EMERGENCY: GPU {self.gpu} temperature critical: {temp}°C "
                f"(threshold: {self.thresholds.temp_critical}°C)"
            )
            logger.error("Resetting overclocks and maximizing fan speed...")
            self._mitigate()
            return True

    def _mitigate(self) -> None:
        try:
            backend = self._telemetry.backend_for_apply()
        except NVTuneError as e:
            logger.error(f"No backend available for emergency mitigation: {e}")
            return

        try:
            backend.apply_clock_offsets(self.gpu, 0, 0)
        except NVTuneError as e:
            logger.error(f"Emergency offset reset failed: {e}")

        try:
            backend.set_fan_speed(self.gpu, EMERGENCY_FAN_PERCENT)
        except NVTuneError as e:
            logger.error(f"Emergency fan override failed: {e}")

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_overclock_safe(self, trial: OverclockTrial) -> Validation:
        """
        Validate offsets against thresholds and current temperature.

        Raises:
            QueryFailed: If the temperature check cannot be performed
        """
        limit = self.thresholds.max_clock_offset_mhz
        if abs(trial.gpu_offset_mhz) > limit:
            return Validation.unsafe(
                f"GPU offset {trial.gpu_offset_mhz}MHz exceeds safe limit of "
                f"±{limit}MHz by {abs(trial.gpu_offset_mhz) - limit}MHz"
            )

        limit = self.thresholds.max_memory_offset_mhz
        if abs(trial.memory_offset_mhz) > limit:
            return Validation.unsafe(
                f"Memory offset {trial.memory_offset_mhz}MHz exceeds safe limit of "
                f"±{limit}MHz by {abs(trial.memory_offset_mhz) - limit}MHz"
            )

        status = self.check_temperature()
        if status.level is SafetyLevel.EMERGENCY_SHUTDOWN:
            return Validation.unsafe(
                f"GPU temperature critical ({status.temperature_c}°C, "
                f"{status.temperature_c - self.thresholds.temp_critical}°C at or above "
                f"the {self.thresholds.temp_critical}°C limit). Cannot apply overclock."
            )
        if status.level is SafetyLevel.THERMAL_THROTTLING:
            return Validation.warning(
                f"GPU temperature elevated ({status.temperature_c}°C, "
                f"{status.temperature_c - self.thresholds.temp_warning}°C over the "
                f"{self.thresholds.temp_warning}°C warning level). "
                "Overclock may worsen thermal situation."
            )
        return Validation.safe()

    def validate_power_limit_safe(self, percent: int) -> Validation:
        limit = self.thresholds.max_power_limit_percent
        if percent > limit:
            return Validation.unsafe(
                f"Power limit {percent}% exceeds safe maximum of {limit}% "
                f"by {percent - limit}%"
            )

        if percent < MIN_POWER_LIMIT_PERCENT:
            return Validation.warning(
                f"Power limit {percent}% is {MIN_POWER_LIMIT_PERCENT - percent}% below "
                f"{MIN_POWER_LIMIT_PERCENT}% and may cause instability"
            )

        return Validation.safe()


# =============================================================================
# Background polling
# =============================================================================

class BackgroundSafetyMonitor:
    """Polls a SafetyMonitor on a daemon thread until stopped."""

    def __init__(self, monitor: SafetyMonitor, check_interval_s: float = 1.0):
        self.monitor = monitor
        self.check_interval_s = check_interval_s
        self._running = False
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_status: Optional[SafetyStatus] = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def last_status(self) -> Optional[SafetyStatus]:
        """Status from the most recent successful check, if any."""
        with self._lock:
            return self._last_status

    def start(self) -> None:
        with self._lock:
            if self._running:
                return  # Already running
            self._running = True
            self._wake.clear()
            self._thread = threading.Thread(
                target=self._run,
                name=f"nvtune-safety-gpu{self.monitor.gpu}",
                daemon=True,
            )
            self._thread.start()
        logger.info(f"Background safety monitor started for GPU {self.monitor.gpu}")

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._running = False
            thread = self._thread
            self._thread = None
        self._wake.set()
        if thread is not None:
            thread.join(timeout)
        logger.info(f"Background safety monitor stopped for GPU {self.monitor.gpu}")

    def _run(self) -> None:
        while self.is_running:
            try:
                status = self.monitor.check_temperature()
                with self._lock:
                    self._last_status = status
                if status.level is SafetyLevel.EMERGENCY_SHUTDOWN:
                    logger.error(f"Emergency shutdown triggered at {status.temperature_c}°C")
                elif status.level is SafetyLevel.THERMAL_THROTTLING:
                    logger.warning(f"Thermal throttling active at {status.temperature_c}°C")
            except NVTuneError as e:
                logger.warning(f"Safety check failed: {e}")

            self._wake.wait(self.check_interval_s)
