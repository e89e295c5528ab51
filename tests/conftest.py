"""Shared pytest fixtures for frpc manager tests."""

import subprocess
import threading
from pathlib import Path
from queue import Queue
from unittest.mock import Mock

import pytest

from frpc_manager.config import SupervisorSettings, TunnelConfig
from frpc_manager.events import LogRecord
from frpc_manager.ports import PortReclaimer
from frpc_manager.process import ManagedProcess, ProcessLauncher
from frpc_manager.utils import normalize_image_name

READY_LINE = "[I] [control.go:172] [abc] start proxy success"


class FakeStream:
    """Blocking line source standing in for a process pipe."""

    def __init__(self):
        self._lines: Queue[str] = Queue()
        self._closed = False

    def feed(self, *lines: str) -> None:
        for line in lines:
            self._lines.put(line + "\n")

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._lines.put("")

    def readline(self) -> str:
        return self._lines.get()


class FakePopen:
    """Popen double whose exit is driven by the test."""

    _next_pid = 40000

    def __init__(self, ignore_terminate: bool = False):
        FakePopen._next_pid += 1
        self.pid = FakePopen._next_pid
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.returncode: int | None = None
        self.ignore_terminate = ignore_terminate
        self.terminate_calls = 0
        self.kill_calls = 0
        self._exited = threading.Event()

    def poll(self) -> int | None:
        return self.returncode

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
        self._exited.set()
        self.stdout.close()
        self.stderr.close()

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-9)

    def wait(self, timeout: float | None = None) -> int:
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired("fake-frpc", timeout)
        return self.returncode  # type: ignore[return-value]


class FakeLauncher(ProcessLauncher):
    """Launcher that hands out FakePopen processes and never touches the OS."""

    def __init__(self, ignore_terminate: bool = False):
        super().__init__(logger=Mock())
        self.ignore_terminate = ignore_terminate
        self.processes: list[FakePopen] = []
        self.launch_calls: list[tuple[Path, list[str], Path | None]] = []
        self.kill_tree_calls: list[int] = []
        self.sweep_calls: list[str] = []
        self.launch_error: Exception | None = None

    @property
    def last(self) -> FakePopen:
        return self.processes[-1]

    def launch(self, path, args=(), working_dir=None) -> ManagedProcess:
        self.launch_calls.append((Path(path), list(args), working_dir))
        if self.launch_error is not None:
            raise self.launch_error
        popen = FakePopen(ignore_terminate=self.ignore_terminate)
        self.processes.append(popen)
        return ManagedProcess(
            pid=popen.pid, image_name=normalize_image_name(Path(path).name), popen=popen
        )

    def kill_tree(self, process: ManagedProcess, grace: float) -> bool:
        self.kill_tree_calls.append(process.pid)
        process.popen.terminate()
        try:
            process.popen.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            return False
        process.poll()
        return True

    def kill_all_by_name(self, image_name: str) -> int:
        self.sweep_calls.append(image_name)
        killed = 0
        for popen in self.processes:
            if popen.poll() is None:
                popen.kill()
                killed += 1
        return killed

    def try_capture(self, path, args=(), timeout=5.0) -> str | None:
        return ""

    def run_and_capture(self, path, args=(), timeout=5.0) -> str:
        return ""

    def kill_pid(self, pid: int, grace: float) -> bool:
        return True


@pytest.fixture
def temp_paths(tmp_path):
    """Create temporary binary and config paths for testing.

    Returns:
        tuple: (binary_path, config_path) as Path objects
    """
    binary_path = tmp_path / "frpc"
    binary_path.touch(mode=0o755)

    config_path = tmp_path / "frpc.toml"
    config_path.write_text(
        'serverAddr = "relay.example.com"\n'
        "serverPort = 7000\n"
        "\n"
        "[[visitors]]\n"
        'name = "sftp-visitor"\n'
        'type = "stcp"\n'
        "bindPort = 6000\n"
    )
    return binary_path, config_path


@pytest.fixture
def tunnel_config(temp_paths):
    binary_path, config_path = temp_paths
    return TunnelConfig(
        executable_path=binary_path,
        config_path=config_path,
        target_port=6000,
        readiness_pattern="start proxy success",
        launch_timeout=5.0,
    )


@pytest.fixture
def fast_settings():
    return SupervisorSettings(kill_grace=0.2, port_reclaim_delay=0.0)


@pytest.fixture
def fake_launcher():
    return FakeLauncher()


@pytest.fixture
def mock_reclaimer():
    reclaimer = Mock(spec=PortReclaimer)
    reclaimer.ensure_free.return_value = True
    return reclaimer


@pytest.fixture
def records():
    """Collects LogRecords emitted to the sink."""
    collected: list[LogRecord] = []
    return collected


@pytest.fixture
def mock_logger():
    return Mock()
