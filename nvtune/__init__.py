"""
NVTune - Safe automatic overclocking for NVIDIA GPUs

Validates proposed clock and power changes against safety thresholds,
applies them, stresses the GPU, watches telemetry and reverts or escalates
based on what it sees. Uses NVML for direct GPU control with an
nvidia-smi / nvidia-settings fallback.

License: MIT
"""

__version__ = "0.1.0"
__author__ = "NVTune Contributors"
__license__ = "MIT"

from .backend import (
    NVTuneError,
    QueryFailed,
    TelemetryUnavailable,
    GpuQueryFailed,
    ApplyFailed,
    UnsafeOperation,
    SessionFatal,
    StressToolUnavailable,
    GpuHandle,
    TelemetrySample,
    ClockOffsets,
    PowerLimits,
    OverclockTrial,
    HardwareBackend,
)

from .telemetry import HardwareTelemetryProvider

from .safety import (
    SafetyThresholds,
    SafetyLevel,
    SafetyStatus,
    Validation,
    ValidationKind,
    SafetyMonitor,
    BackgroundSafetyMonitor,
)

from .stability import (
    StabilityOutcome,
    StabilityResult,
    StabilityTester,
    MaxStableOffsetFinder,
)

from .controller import (
    SafeGpuController,
    ApplyOutcome,
    detect_architecture,
)

from .autotune import (
    AutoTuneTarget,
    SafetyMode,
    AutoTuneConfig,
    TuningProfile,
    TuningSession,
    AutoOverclockOrchestrator,
    format_session,
)

from .config import (
    AppConfig,
    ConfigManager,
    get_config,
    get_config_manager,
    configure_logging,
)

__all__ = [
    # Errors
    "NVTuneError",
    "QueryFailed",
    "TelemetryUnavailable",
    "GpuQueryFailed",
    "ApplyFailed",
    "UnsafeOperation",
    "SessionFatal",
    "StressToolUnavailable",
    # Data model
    "GpuHandle",
    "TelemetrySample",
    "ClockOffsets",
    "PowerLimits",
    "OverclockTrial",
    "HardwareBackend",
    # Telemetry & safety
    "HardwareTelemetryProvider",
    "SafetyThresholds",
    "SafetyLevel",
    "SafetyStatus",
    "Validation",
    "ValidationKind",
    "SafetyMonitor",
    "BackgroundSafetyMonitor",
    # Stability
    "StabilityOutcome",
    "StabilityResult",
    "StabilityTester",
    "MaxStableOffsetFinder",
    # Controller
    "SafeGpuController",
    "ApplyOutcome",
    "detect_architecture",
    # Auto-tune
    "AutoTuneTarget",
    "SafetyMode",
    "AutoTuneConfig",
    "TuningProfile",
    "TuningSession",
    "AutoOverclockOrchestrator",
    "format_session",
    # Config
    "AppConfig",
    "ConfigManager",
    "get_config",
    "get_config_manager",
    "configure_logging",
]
