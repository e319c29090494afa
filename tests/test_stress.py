"""Tests for stress tool discovery and process handling."""

import subprocess

import pytest

from nvtune.backend import StressToolUnavailable
from nvtune.stress import KNOWN_TOOLS, ExternalStressWorkload, ProcessStressHandle


def which_only(*installed: str):
    return lambda exe: f"/usr/bin/{exe}" if exe in installed else None


class FakeProcess:
    def __init__(self, hangs: bool = False) -> None:
        self.hangs = hangs
        self.returncode = None
        self.terminated = False
        self.killed = False

    def poll(self):
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.hangs:
            self.returncode = -15

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        if self.returncode is None:
            raise subprocess.TimeoutExpired("stress", timeout)
        return self.returncode


class TestDiscovery:
    def test_prefers_earlier_tools(self) -> None:
        workload = ExternalStressWorkload(which=which_only("glxgears", "gpu_burn"))
        tool, path = workload.find_tool()
        assert tool.executable == "gpu_burn"
        assert path == "/usr/bin/gpu_burn"

    def test_nothing_installed(self) -> None:
        workload = ExternalStressWorkload(which=which_only())
        assert not workload.is_available()
        with pytest.raises(StressToolUnavailable, match="no stress tool available"):
            workload.start(10)

    def test_gpu_burn_gets_duration(self) -> None:
        assert KNOWN_TOOLS[0].command(12.7) == ["gpu_burn", "12"]

    def test_start_launches_found_tool(self, monkeypatch) -> None:
        launched = []

        def fake_popen(cmd, **kwargs):
            launched.append(cmd)
            return FakeProcess()

        monkeypatch.setattr(subprocess, "Popen", fake_popen)
        workload = ExternalStressWorkload(which=which_only("glmark2"))
        handle = workload.start(30)

        assert launched == [["/usr/bin/glmark2", "--run-forever"]]
        assert handle.poll() is None


class TestProcessStressHandle:
    def test_stop_terminates(self) -> None:
        process = FakeProcess()
        ProcessStressHandle(process, KNOWN_TOOLS[0]).stop()
        assert process.terminated
        assert not process.killed

    def test_stop_kills_when_terminate_ignored(self) -> None:
        process = FakeProcess(hangs=True)
        ProcessStressHandle(process, KNOWN_TOOLS[0]).stop()
        assert process.killed

    def test_stop_after_exit_is_noop(self) -> None:
        process = FakeProcess()
        process.returncode = 0
        ProcessStressHandle(process, KNOWN_TOOLS[0]).stop()
        assert not process.terminated
