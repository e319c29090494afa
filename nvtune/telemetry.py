"""
NVTune - Hardware Telemetry Provider

Queries GPU state through an ordered list of backends: the NVML binding
first, then the nvidia-smi text parser. The first backend that answers wins.

No retries happen here. Callers that want retries wrap calls in a
RetryPolicy (see retry.py).
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence, Set, TypeVar

from .backend import (
    ClockOffsets,
    GpuHandle,
    HardwareBackend,
    NVTuneError,
    PowerLimits,
    TelemetrySample,
    TelemetryUnavailable,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HardwareTelemetryProvider:
    """Telemetry with backend fallback and capability reporting."""

    def __init__(self, backends: Sequence[HardwareBackend]):
        if not backends:
            raise ValueError("at least one hardware backend is required")
        self._backends: List[HardwareBackend] = list(backends)

    @classmethod
    def create_default(cls) -> "HardwareTelemetryProvider":
        """NVML first, nvidia-smi second."""
        from .cli_backend import CliBackend
        from .nvml_controller import NvmlBackend

        return cls([NvmlBackend(), CliBackend()])

    @property
    def backends(self) -> List[HardwareBackend]:
        return list(self._backends)

    def available_methods(self) -> Set[str]:
        """Names of the backends that currently respond to a probe."""
        return {b.name for b in self._backends if b.is_available()}

    def primary_method(self) -> Optional[str]:
        for backend in self._backends:
            if backend.is_available():
                return backend.name
        return None

    def has_any_method(self) -> bool:
        return self.primary_method() is not None

    def backend_for_apply(self) -> HardwareBackend:
        """The backend that hardware writes should go through."""
        for backend in self._backends:
            if backend.is_available():
                return backend
        raise TelemetryUnavailable(
            "No GPU control method available",
            {b.name: "not available" for b in self._backends},
        )

    def _first_success(self, operation: str, call: Callable[[HardwareBackend], T]) -> T:
        attempts: Dict[str, str] = {}

        for backend in self._backends:
            if not backend.is_available():
                attempts[backend.name] = "not available"
                continue
            try:
                return call(backend)
            except NVTuneError as e:
                attempts[backend.name] = str(e)
                logger.warning(f"{backend.name} failed to {operation}, trying fallback: {e}")

        raise TelemetryUnavailable(f"All backends failed to {operation}", attempts)

    def get_telemetry(self, gpu: GpuHandle) -> TelemetrySample:
        """
        Query current telemetry for one GPU.

        Raises:
            TelemetryUnavailable: If no backend produced a sample
        """
        return self._first_success("query telemetry", lambda b: b.query(gpu))

    def get_clock_offsets(self, gpu: GpuHandle) -> ClockOffsets:
        return self._first_success("read clock offsets", lambda b: b.get_clock_offsets(gpu))

    def get_power_limits(self, gpu: GpuHandle) -> PowerLimits:
        return self._first_success("read power limits", lambda b: b.get_power_limits(gpu))

    def shutdown(self) -> None:
        for backend in self._backends:
            backend.shutdown()
