"""
NVTune - Simulated GPU

An in-memory GPU that behaves consistently across queries and mutations.
Used by the test suite and for dry runs on machines without NVIDIA hardware.

Temperatures can be scripted (a sequence consumed one reading per query)
and any operation can be made to fail.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from .backend import (
    ApplyFailed,
    ClockOffsets,
    GpuHandle,
    PowerLimits,
    QueryFailed,
    TelemetrySample,
)

logger = logging.getLogger(__name__)


class SimulatedBackend:
    """
    Deterministic hardware double.

    Every mutating call is recorded in `calls` as a tuple
    (operation, gpu, *args) so tests can assert on exact hardware writes.
    """

    name = "simulated"

    def __init__(
        self,
        temperature_c: int = 60,
        power_limit_w: float = 250.0,
        default_power_w: float = 250.0,
        min_power_w: float = 100.0,
        max_power_w: float = 300.0,
        base_core_mhz: int = 1800,
        base_mem_mhz: int = 7000,
        available: bool = True,
    ):
        self.temperature_c = temperature_c
        self.power_limit_w = power_limit_w
        self.default_power_w = default_power_w
        self.min_power_w = min_power_w
        self.max_power_w = max_power_w
        self.base_core_mhz = base_core_mhz
        self.base_mem_mhz = base_mem_mhz
        self.available = available

        self.fan_percent = 40
        self.throttle_reasons: Tuple[str, ...] = ()
        self.offsets: Dict[GpuHandle, Tuple[int, int]] = {}
        self.calls: List[tuple] = []

        # Failure injection
        self.fail_queries = False
        self.fail_applies = 0  # number of upcoming apply calls that fail
        self.fail_all_applies = False

        self._temperature_script: List[int] = []

    # -------------------------------------------------------------------------
    # Scripting helpers
    # -------------------------------------------------------------------------

    def script_temperatures(self, readings: Iterable[int]) -> None:
        """Queue temperatures returned by successive queries; the last one sticks."""
        self._temperature_script = list(readings)

    def mutation_calls(self, operation: Optional[str] = None) -> List[tuple]:
        if operation is None:
            return list(self.calls)
        return [c for c in self.calls if c[0] == operation]

    # -------------------------------------------------------------------------
    # HardwareBackend
    # -------------------------------------------------------------------------

    def is_available(self) -> bool:
        return self.available

    def shutdown(self) -> None:
        pass

    def _next_temperature(self) -> int:
        if self._temperature_script:
            self.temperature_c = self._temperature_script.pop(0)
        return self.temperature_c

    def query(self, gpu: GpuHandle) -> TelemetrySample:
        if self.fail_queries:
            raise QueryFailed("simulated query failure")
        core, mem = self.offsets.get(gpu, (0, 0))
        return TelemetrySample(
            temperature_c=self._next_temperature(),
            power_draw_w=self.power_limit_w * 0.8,
            power_limit_w=self.power_limit_w,
            gpu_clock_mhz=self.base_core_mhz + core,
            mem_clock_mhz=self.base_mem_mhz + mem,
            fan_percent=self.fan_percent,
            utilization_percent=99,
            throttle_reasons=self.throttle_reasons,
        )

    def get_clock_offsets(self, gpu: GpuHandle) -> ClockOffsets:
        if self.fail_queries:
            raise QueryFailed("simulated query failure")
        core, mem = self.offsets.get(gpu, (0, 0))
        return ClockOffsets(core_offset_mhz=core, memory_offset_mhz=mem)

    def get_power_limits(self, gpu: GpuHandle) -> PowerLimits:
        if self.fail_queries:
            raise QueryFailed("simulated query failure")
        return PowerLimits(
            current_watts=self.power_limit_w,
            default_watts=self.default_power_w,
            min_watts=self.min_power_w,
            max_watts=self.max_power_w,
        )

    def _maybe_fail_apply(self, operation: str) -> None:
        if self.fail_all_applies:
            raise ApplyFailed(f"simulated {operation} failure")
        if self.fail_applies > 0:
            self.fail_applies -= 1
            raise ApplyFailed(f"simulated {operation} failure")

    def apply_clock_offsets(self, gpu: GpuHandle, gpu_offset_mhz: int, memory_offset_mhz: int) -> None:
        self.calls.append(("apply_clock_offsets", gpu, gpu_offset_mhz, memory_offset_mhz))
        self._maybe_fail_apply("apply_clock_offsets")
        self.offsets[gpu] = (gpu_offset_mhz, memory_offset_mhz)
        logger.debug(f"simulated GPU {gpu}: offsets {gpu_offset_mhz}/{memory_offset_mhz}")

    def apply_power_limit(self, gpu: GpuHandle, watts: float) -> None:
        self.calls.append(("apply_power_limit", gpu, watts))
        self._maybe_fail_apply("apply_power_limit")
        self.power_limit_w = max(self.min_power_w, min(watts, self.max_power_w))

    def set_fan_speed(self, gpu: GpuHandle, percent: int) -> None:
        self.calls.append(("set_fan_speed", gpu, percent))
        self._maybe_fail_apply("set_fan_speed")
        self.fan_percent = percent
