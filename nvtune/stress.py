"""
NVTune - Stress Workloads

Launches an external GPU stress program for stability testing. No single
program is assumed: a list of known tools is probed in order and the first
one found on PATH is used.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .backend import StressToolUnavailable

logger = logging.getLogger(__name__)

STOP_TIMEOUT_S = 2.0


@runtime_checkable
class StressHandle(Protocol):
    """A running stress workload."""

    def poll(self) -> Optional[int]: ...

    def stop(self) -> None: ...


@runtime_checkable
class StressWorkload(Protocol):
    """Capability to start a GPU stress workload."""

    def is_available(self) -> bool: ...

    def start(self, duration_s: float) -> StressHandle: ...


@dataclass(frozen=True)
class StressTool:
    """One known stress program and how to invoke it."""
    name: str
    executable: str
    build_args: Callable[[int], List[str]]

    def command(self, duration_s: float) -> List[str]:
        return [self.executable, *self.build_args(max(1, int(duration_s)))]


# Probed in order. gpu-burn takes its run time in seconds; the others run
# until stopped.
KNOWN_TOOLS: Tuple[StressTool, ...] = (
    StressTool("gpu-burn", "gpu_burn", lambda d: [str(d)]),
    StressTool("gpu-burn", "gpu-burn", lambda d: [str(d)]),
    StressTool("glmark2", "glmark2", lambda d: ["--run-forever"]),
    StressTool("glmark2", "glmark2-es2-wayland", lambda d: ["--run-forever"]),
    StressTool("vkmark", "vkmark", lambda d: []),
    StressTool("glxgears", "glxgears", lambda d: ["-fullscreen"]),
)


class ProcessStressHandle:
    """Wraps a Popen'd stress program."""

    def __init__(self, process: subprocess.Popen, tool: StressTool):
        self._process = process
        self.tool = tool

    def poll(self) -> Optional[int]:
        return self._process.poll()

    def stop(self) -> None:
        if self._process.poll() is not None:
            return
        try:
            self._process.terminate()
            self._process.wait(timeout=STOP_TIMEOUT_S)
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.tool.name} did not exit, killing it")
            self._process.kill()
            self._process.wait()
        logger.info(f"Stress workload {self.tool.name} stopped")


class ExternalStressWorkload:
    """Runs the first installed tool from an ordered list."""

    def __init__(
        self,
        tools: Sequence[StressTool] = KNOWN_TOOLS,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self._tools = list(tools)
        self._which = which

    def find_tool(self) -> Optional[Tuple[StressTool, str]]:
        for tool in self._tools:
            path = self._which(tool.executable)
            if path:
                return tool, path
        return None

    def is_available(self) -> bool:
        return self.find_tool() is not None

    def start(self, duration_s: float) -> ProcessStressHandle:
        """
        Start the workload.

        Raises:
            StressToolUnavailable: If none of the known tools is installed
        """
        found = self.find_tool()
        if found is None:
            names = ", ".join(sorted({t.name for t in self._tools}))
            raise StressToolUnavailable(f"no stress tool available (install one of: {names})")

        tool, path = found
        cmd = [path, *tool.command(duration_s)[1:]]
        logger.info(f"Starting stress workload: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise StressToolUnavailable(f"Failed to start {tool.name}: {e}")

        return ProcessStressHandle(process, tool)
