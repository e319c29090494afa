"""
NVTune - NVML Backend

Primary hardware backend, built on the official NVIDIA Python bindings
(nvidia-ml-py). Reads telemetry directly from the driver and writes clock
offsets, power limits and fan speeds through NVML.

Write operations require root privileges. Permission errors are reported as
ApplyFailed with a hint instead of leaking pynvml exception types.

API Reference: https://docs.nvidia.com/deploy/nvml-api/
"""

import logging
from typing import Dict, List

# Import nvidia-ml-py (the official NVIDIA Python bindings)
try:
    import pynvml
except ImportError:
    raise ImportError(
        "nvidia-ml-py is required. Install with: pip install nvidia-ml-py"
    )

from .backend import (
    ApplyFailed,
    ClockOffsets,
    GpuHandle,
    PowerLimits,
    QueryFailed,
    TelemetrySample,
)

logger = logging.getLogger(__name__)


def _decode(value) -> str:
    # Handle bytes vs string (depends on pynvml version)
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value


class NvmlBackend:
    """
    Hardware backend for NVIDIA GPUs via NVML.

    NVML is initialized lazily on first use and device handles are cached
    per GPU index. Call shutdown() (or use as a context manager) to release
    the library.

    Usage:
        with NvmlBackend() as nvml:
            sample = nvml.query(0)
            print(f"GPU: {sample.temperature_c}°C")
    """

    name = "NVML"

    def __init__(self):
        self._initialized = False
        self._handles: Dict[GpuHandle, object] = {}

    def __enter__(self):
        self._ensure_initialized()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            raise QueryFailed(f"Failed to initialize NVML: {e}")
        self._initialized = True
        logger.info("NVML initialized")

    def _handle(self, gpu: GpuHandle):
        self._ensure_initialized()
        if gpu in self._handles:
            return self._handles[gpu]

        try:
            device_count = pynvml.nvmlDeviceGetCount()
            if gpu >= device_count:
                raise QueryFailed(
                    f"GPU index {gpu} not found. "
                    f"Available GPUs: 0-{device_count - 1}"
                )
            handle = pynvml.nvmlDeviceGetHandleByIndex(gpu)
        except pynvml.NVMLError as e:
            raise QueryFailed(f"Failed to access GPU {gpu}: {e}")

        self._handles[gpu] = handle
        return handle

    def is_available(self) -> bool:
        """Probe whether NVML loads and sees at least one GPU."""
        try:
            self._ensure_initialized()
            return pynvml.nvmlDeviceGetCount() > 0
        except (QueryFailed, pynvml.NVMLError):
            return False

    def shutdown(self) -> None:
        """Shutdown NVML and release resources."""
        if self._initialized:
            try:
                pynvml.nvmlShutdown()
                logger.info("NVML shutdown complete")
            except pynvml.NVMLError as e:
                logger.warning(f"Error during NVML shutdown: {e}")
            finally:
                self._initialized = False
                self._handles.clear()

    # =========================================================================
    # Queries
    # =========================================================================

    def device_name(self, gpu: GpuHandle) -> str:
        handle = self._handle(gpu)
        try:
            return _decode(pynvml.nvmlDeviceGetName(handle))
        except pynvml.NVMLError as e:
            raise QueryFailed(f"Failed to read GPU name: {e}")

    def compute_capability(self, gpu: GpuHandle):
        handle = self._handle(gpu)
        try:
            return pynvml.nvmlDeviceGetCudaComputeCapability(handle)
        except pynvml.NVMLError:
            return None

    def query(self, gpu: GpuHandle) -> TelemetrySample:
        """
        Read current GPU telemetry.

        Only the temperature read is mandatory. Sensors that are not
        supported on a given board report 0.
        """
        handle = self._handle(gpu)

        try:
            temp = pynvml.nvmlDeviceGetTemperature(handle, pynvml.NVML_TEMPERATURE_GPU)
        except pynvml.NVMLError as e:
            raise QueryFailed(f"Failed to read temperature: {e}")

        # Fan speed (may not be available on all GPUs)
        try:
            fan_speed = pynvml.nvmlDeviceGetFanSpeed(handle)
        except pynvml.NVMLError:
            fan_speed = 0

        try:
            power_draw = pynvml.nvmlDeviceGetPowerUsage(handle) / 1000.0
        except pynvml.NVMLError:
            power_draw = 0.0

        try:
            power_limit = pynvml.nvmlDeviceGetPowerManagementLimit(handle) / 1000.0
        except pynvml.NVMLError:
            power_limit = 0.0

        try:
            gpu_util = pynvml.nvmlDeviceGetUtilizationRates(handle).gpu
        except pynvml.NVMLError:
            gpu_util = 0

        try:
            core_clock = pynvml.nvmlDeviceGetClockInfo(handle, pynvml.NVML_CLOCK_GRAPHICS)
        except pynvml.NVMLError:
            core_clock = 0

        try:
            memory_clock = pynvml.nvmlDeviceGetClockInfo(handle, pynvml.NVML_CLOCK_MEM)
        except pynvml.NVMLError:
            memory_clock = 0

        return TelemetrySample(
            temperature_c=int(temp),
            power_draw_w=power_draw,
            power_limit_w=power_limit,
            gpu_clock_mhz=core_clock,
            mem_clock_mhz=memory_clock,
            fan_percent=fan_speed,
            utilization_percent=gpu_util,
            throttle_reasons=tuple(self._throttle_reasons(handle)),
        )

    def _throttle_reasons(self, handle) -> List[str]:
        reasons = []
        try:
            mask = pynvml.nvmlDeviceGetCurrentClocksThrottleReasons(handle)
        except pynvml.NVMLError:
            return reasons  # Not supported

        if mask & pynvml.nvmlClocksThrottleReasonSwPowerCap:
            reasons.append("Power (SW)")
        if mask & pynvml.nvmlClocksThrottleReasonHwPowerBrakeSlowdown:
            reasons.append("Power (HW)")
        if mask & pynvml.nvmlClocksThrottleReasonSwThermalSlowdown:
            reasons.append("Thermal (SW)")
        if mask & pynvml.nvmlClocksThrottleReasonHwThermalSlowdown:
            reasons.append("Thermal (HW)")
        if mask & pynvml.nvmlClocksThrottleReasonHwSlowdown:
            reasons.append("HW Slowdown")
        return reasons

    def get_clock_offsets(self, gpu: GpuHandle) -> ClockOffsets:
        """
        Get current clock offset values.

        Note:
            Reports 0 for offsets the driver does not expose.
        """
        handle = self._handle(gpu)

        try:
            core_offset = pynvml.nvmlDeviceGetGpcClkVfOffset(handle)
        except (pynvml.NVMLError, AttributeError):
            core_offset = 0

        try:
            mem_offset = pynvml.nvmlDeviceGetMemClkVfOffset(handle)
        except (pynvml.NVMLError, AttributeError):
            mem_offset = 0

        return ClockOffsets(core_offset_mhz=core_offset, memory_offset_mhz=mem_offset)

    def get_power_limits(self, gpu: GpuHandle) -> PowerLimits:
        handle = self._handle(gpu)
        try:
            current_mw = pynvml.nvmlDeviceGetPowerManagementLimit(handle)
            default_mw = pynvml.nvmlDeviceGetPowerManagementDefaultLimit(handle)
            min_mw, max_mw = pynvml.nvmlDeviceGetPowerManagementLimitConstraints(handle)
        except pynvml.NVMLError as e:
            raise QueryFailed(f"Failed to get power limits: {e}")

        return PowerLimits(
            current_watts=current_mw / 1000.0,
            default_watts=default_mw / 1000.0,
            min_watts=min_mw / 1000.0,
            max_watts=max_mw / 1000.0,
        )

    # =========================================================================
    # Mutations
    # =========================================================================

    def apply_clock_offsets(self, gpu: GpuHandle, gpu_offset_mhz: int, memory_offset_mhz: int) -> None:
        """
        Set core and memory clock offsets.

        Raises:
            ApplyFailed: If the driver rejects the offsets or root is missing
        """
        handle = self._handle(gpu)
        try:
            pynvml.nvmlDeviceSetGpcClkVfOffset(handle, gpu_offset_mhz)
            logger.info(f"GPU {gpu}: core clock offset set to {gpu_offset_mhz}MHz")

            pynvml.nvmlDeviceSetMemClkVfOffset(handle, memory_offset_mhz)
            logger.info(f"GPU {gpu}: memory clock offset set to {memory_offset_mhz}MHz")
        except pynvml.NVMLError_NoPermission:
            raise ApplyFailed(
                "Setting clock offsets requires root privileges. "
                "Run with sudo or as root."
            )
        except pynvml.NVMLError as e:
            raise ApplyFailed(f"Failed to set clock offsets: {e}")

    def apply_power_limit(self, gpu: GpuHandle, watts: float) -> None:
        """
        Set GPU power limit.

        The value is clamped to the GPU's reported min/max constraints.
        """
        limits = self.get_power_limits(gpu)
        clamped_watts = max(limits.min_watts, min(watts, limits.max_watts))

        if clamped_watts != watts:
            logger.warning(
                f"Power limit {watts}W clamped to {clamped_watts}W "
                f"(valid range: {limits.min_watts}W - {limits.max_watts}W)"
            )

        try:
            # NVML uses milliwatts
            pynvml.nvmlDeviceSetPowerManagementLimit(self._handle(gpu), int(clamped_watts * 1000))
            logger.info(f"GPU {gpu}: power limit set to {clamped_watts}W")
        except pynvml.NVMLError_NoPermission:
            raise ApplyFailed(
                "Setting power limit requires root privileges. "
                "Run with sudo or as root."
            )
        except pynvml.NVMLError as e:
            raise ApplyFailed(f"Failed to set power limit: {e}")

    def set_fan_speed(self, gpu: GpuHandle, percent: int) -> None:
        """Put every fan in manual mode at the given speed."""
        handle = self._handle(gpu)
        try:
            fan_count = pynvml.nvmlDeviceGetNumFans(handle)
        except pynvml.NVMLError:
            fan_count = 1

        try:
            for fan_index in range(max(1, fan_count)):
                pynvml.nvmlDeviceSetFanControlPolicy(
                    handle, fan_index, pynvml.NVML_FAN_POLICY_MANUAL
                )
                pynvml.nvmlDeviceSetFanSpeed_v2(handle, fan_index, percent)
            logger.info(f"GPU {gpu}: {max(1, fan_count)} fan(s) set to {percent}%")
        except pynvml.NVMLError_NoPermission:
            raise ApplyFailed(
                "Setting fan speed requires root privileges. "
                "Run with sudo or as root."
            )
        except pynvml.NVMLError as e:
            raise ApplyFailed(f"Failed to set fan speed: {e}")
