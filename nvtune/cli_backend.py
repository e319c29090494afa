"""
NVTune - CLI Fallback Backend

Talks to the GPU through the NVIDIA command line tools when the NVML
bindings are unusable:

- nvidia-smi      telemetry queries (CSV) and power limits
- nvidia-settings clock offsets and fan speed (X11 only, needs Coolbits)
"""

import logging
import os
import shutil
import subprocess
from typing import List, Optional

from .backend import (
    ApplyFailed,
    ClockOffsets,
    GpuHandle,
    PowerLimits,
    QueryFailed,
    TelemetrySample,
)

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_S = 10

TELEMETRY_FIELDS = (
    "temperature.gpu",
    "power.draw",
    "power.limit",
    "clocks.gr",
    "clocks.mem",
    "fan.speed",
    "utilization.gpu",
    "clocks_throttle_reasons.hw_thermal_slowdown",
    "clocks_throttle_reasons.sw_thermal_slowdown",
)

POWER_FIELDS = (
    "power.limit",
    "power.default_limit",
    "power.min_limit",
    "power.max_limit",
)


def _parse_number(field: str) -> float:
    """Parse one nvidia-smi CSV field; unsupported values read as 0."""
    field = field.strip()
    if not field or field.startswith("[") or field in ("N/A", "Not Active"):
        return 0.0
    try:
        return float(field)
    except ValueError:
        raise QueryFailed(f"Unexpected nvidia-smi value: {field!r}")


def _is_active(field: str) -> bool:
    return field.strip().lower() == "active"


def parse_telemetry_csv(output: str) -> TelemetrySample:
    """
    Parse one line of `nvidia-smi --query-gpu=<TELEMETRY_FIELDS>` output.

    Raises:
        QueryFailed: If the line does not have the expected shape
    """
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if not lines:
        raise QueryFailed("nvidia-smi returned no data")

    parts = [p.strip() for p in lines[0].split(",")]
    if len(parts) < 7:
        raise QueryFailed(f"Unexpected nvidia-smi output format: {lines[0]!r}")

    reasons = []
    if len(parts) > 7 and _is_active(parts[7]):
        reasons.append("Thermal (HW)")
    if len(parts) > 8 and _is_active(parts[8]):
        reasons.append("Thermal (SW)")

    return TelemetrySample(
        temperature_c=int(_parse_number(parts[0])),
        power_draw_w=_parse_number(parts[1]),
        power_limit_w=_parse_number(parts[2]),
        gpu_clock_mhz=int(_parse_number(parts[3])),
        mem_clock_mhz=int(_parse_number(parts[4])),
        fan_percent=int(_parse_number(parts[5])),
        utilization_percent=int(_parse_number(parts[6])),
        throttle_reasons=tuple(reasons),
    )


class CliBackend:
    """
    Backend that shells out to nvidia-smi and nvidia-settings.

    Offsets set through nvidia-settings are remembered locally, since the
    tool's query output differs between driver generations.
    """

    name = "nvidia-smi"

    def __init__(self, smi_path: Optional[str] = None, settings_path: Optional[str] = None):
        self._smi = smi_path or shutil.which("nvidia-smi")
        self._settings = settings_path or shutil.which("nvidia-settings")
        self._offsets = {}

        if not self._settings:
            logger.debug("nvidia-settings not found, clock offsets unavailable via CLI")

    def is_available(self) -> bool:
        return self._smi is not None

    def shutdown(self) -> None:
        pass

    def _run(self, cmd: List[str], env=None) -> str:
        """
        Run a command and return its stdout.

        Raises QueryFailed when the tool is missing or exits non-zero.
        """
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=COMMAND_TIMEOUT_S,
                env=env,
            )
        except subprocess.TimeoutExpired:
            raise QueryFailed(f"{cmd[0]} timed out")
        except FileNotFoundError:
            raise QueryFailed(f"{cmd[0]} not found")

        if result.returncode != 0:
            raise QueryFailed(
                (result.stderr or result.stdout).strip()
                or f"{cmd[0]} failed with code {result.returncode}"
            )
        return result.stdout

    def _smi_query(self, gpu: GpuHandle, fields) -> str:
        if not self._smi:
            raise QueryFailed("nvidia-smi not found")
        return self._run([
            self._smi,
            f"--query-gpu={','.join(fields)}",
            "--format=csv,noheader,nounits",
            "-i", str(gpu),
        ])

    # =========================================================================
    # Queries
    # =========================================================================

    def query(self, gpu: GpuHandle) -> TelemetrySample:
        return parse_telemetry_csv(self._smi_query(gpu, TELEMETRY_FIELDS))

    def get_power_limits(self, gpu: GpuHandle) -> PowerLimits:
        output = self._smi_query(gpu, POWER_FIELDS).strip()
        parts = [p.strip() for p in output.splitlines()[0].split(",")] if output else []
        if len(parts) < 4:
            raise QueryFailed(f"Unexpected nvidia-smi power output: {output!r}")
        current, default, min_w, max_w = (_parse_number(p) for p in parts[:4])
        return PowerLimits(
            current_watts=current,
            default_watts=default,
            min_watts=min_w,
            max_watts=max_w,
        )

    def get_clock_offsets(self, gpu: GpuHandle) -> ClockOffsets:
        core, mem = self._offsets.get(gpu, (0, 0))
        return ClockOffsets(core_offset_mhz=core, memory_offset_mhz=mem)

    # =========================================================================
    # Mutations
    # =========================================================================

    def _nvidia_settings(self, *assignments: str) -> None:
        if not self._settings:
            raise ApplyFailed("nvidia-settings not found - clock control needs it on this system")
        if not os.environ.get("DISPLAY"):
            raise ApplyFailed("nvidia-settings requires an X11 DISPLAY (Coolbits enabled)")

        cmd = [self._settings]
        for assignment in assignments:
            cmd += ["-a", assignment]
        try:
            self._run(cmd)
        except QueryFailed as e:
            raise ApplyFailed(f"nvidia-settings failed: {e}")

    def apply_clock_offsets(self, gpu: GpuHandle, gpu_offset_mhz: int, memory_offset_mhz: int) -> None:
        self._nvidia_settings(
            f"[gpu:{gpu}]/GPUGraphicsClockOffsetAllPerformanceLevels={gpu_offset_mhz}",
            f"[gpu:{gpu}]/GPUMemoryTransferRateOffsetAllPerformanceLevels={memory_offset_mhz}",
        )
        self._offsets[gpu] = (gpu_offset_mhz, memory_offset_mhz)
        logger.info(
            f"GPU {gpu}: offsets set via nvidia-settings "
            f"(core {gpu_offset_mhz:+d}MHz, mem {memory_offset_mhz:+d}MHz)"
        )

    def apply_power_limit(self, gpu: GpuHandle, watts: float) -> None:
        if not self._smi:
            raise ApplyFailed("nvidia-smi not found")
        try:
            self._run([self._smi, "-i", str(gpu), "-pl", f"{watts:.0f}"])
        except QueryFailed as e:
            raise ApplyFailed(f"nvidia-smi -pl failed: {e}")
        logger.info(f"GPU {gpu}: power limit set to {watts:.0f}W via nvidia-smi")

    def set_fan_speed(self, gpu: GpuHandle, percent: int) -> None:
        self._nvidia_settings(
            f"[gpu:{gpu}]/GPUFanControlState=1",
            f"[fan:{gpu}]/GPUTargetFanSpeed={percent}",
        )
        logger.info(f"GPU {gpu}: fan set to {percent}% via nvidia-settings")
