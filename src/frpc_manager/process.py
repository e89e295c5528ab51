"""Process management for the tunnel executable."""

import os
import shutil
import subprocess
import time
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil
import structlog
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ConfigError, SpawnError
from .logging import get_logger
from .utils import executable_names, normalize_image_name

COMMON_BINARY_DIRS = (
    "/usr/local/bin",
    "/usr/bin",
    "/opt/frp",
    "/usr/local/frp",
    "~/frp",
    ".",
)


def _no_window_flags() -> dict[str, Any]:
    """Keep console windows from popping up for child processes on Windows."""
    if os.name == "nt":
        return {"creationflags": getattr(subprocess, "CREATE_NO_WINDOW", 0)}
    return {}


class ManagedProcess(BaseModel):
    """Handle to a process started by :class:`ProcessLauncher`."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    pid: int
    image_name: str
    started_at: datetime = Field(default_factory=datetime.now)
    last_exit_code: int | None = None
    popen: Any = Field(exclude=True, repr=False)

    def poll(self) -> int | None:
        """Return the exit code if the process has exited, else None."""
        code = self.popen.poll()
        if code is not None:
            self.last_exit_code = code
        return code

    def is_running(self) -> bool:
        return self.poll() is None

    @property
    def stdout(self) -> Any:
        return self.popen.stdout

    @property
    def stderr(self) -> Any:
        return self.popen.stderr


class ProcessLauncher:
    """Starts, stops and sweeps external processes."""

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger | None = None,
        sweep_wait: float = 3.0,
    ):
        self._logger = logger or get_logger(__name__)
        self.sweep_wait = sweep_wait

    def launch(
        self,
        path: str | Path,
        args: Sequence[str] = (),
        working_dir: str | Path | None = None,
    ) -> ManagedProcess:
        """Spawn an executable with line-buffered stdout/stderr pipes.

        Args:
            path: Executable to run
            args: Command line arguments
            working_dir: Optional working directory

        Returns:
            Handle to the started process

        Raises:
            SpawnError: If the file is missing or the OS refuses to start it
        """
        binary = Path(path)
        if not binary.is_file():
            raise SpawnError(f"Executable not found: {binary}")

        command = [str(binary), *args]
        self._logger.info("Launching process", command=command)
        try:
            popen = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                errors="replace",
                cwd=str(working_dir) if working_dir is not None else None,
                **_no_window_flags(),
            )
        except OSError as e:
            self._logger.error("Failed to launch process", error=str(e))
            raise SpawnError(f"Failed to start {binary}: {e}") from e

        process = ManagedProcess(
            pid=popen.pid,
            image_name=normalize_image_name(binary.name),
            popen=popen,
        )
        self._logger.info("Process started", pid=process.pid)
        return process

    def kill_tree(self, process: ManagedProcess, grace: float) -> bool:
        """Terminate a process and all of its descendants.

        Survivors of the grace period are sent a hard kill without waiting
        for it to take effect.

        Args:
            process: Handle returned by :meth:`launch`
            grace: Seconds to wait for the process to exit

        Returns:
            True if the process exited within the grace period
        """
        if process.poll() is not None:
            self._logger.debug("Process already exited", pid=process.pid)
            return True

        deadline = time.monotonic() + grace
        try:
            descendants = psutil.Process(process.pid).children(recursive=True)
        except psutil.Error:
            descendants = []

        self._logger.info(
            "Terminating process tree",
            pid=process.pid,
            descendants=[child.pid for child in descendants],
        )
        for child in descendants:
            self._signal(child, "terminate")
        try:
            process.popen.terminate()
        except OSError:
            # Exited between poll and terminate
            pass

        try:
            process.popen.wait(timeout=grace)
            exited = True
        except subprocess.TimeoutExpired:
            exited = False

        remaining = max(0.0, deadline - time.monotonic())
        _, alive = psutil.wait_procs(descendants, timeout=remaining)
        for survivor in alive:
            self._signal(survivor, "kill")

        if not exited:
            self._logger.warning(
                "Process did not exit within grace period, force killing",
                pid=process.pid,
                grace=grace,
            )
            try:
                process.popen.kill()
            except OSError:
                pass

        process.poll()
        return exited

    def kill_pid(self, pid: int, grace: float) -> bool:
        """Kill a single process by pid and wait for it to go away.

        Returns:
            True if the process is gone (including already gone before kill)
        """
        if pid == os.getpid():
            self._logger.warning("Refusing to kill own process", pid=pid)
            return False
        try:
            proc = psutil.Process(pid)
            proc.kill()
            proc.wait(timeout=grace)
            return True
        except psutil.NoSuchProcess:
            return True
        except psutil.TimeoutExpired:
            self._logger.warning("Process survived kill", pid=pid, grace=grace)
            return False
        except psutil.AccessDenied:
            self._logger.warning("Access denied killing process", pid=pid)
            return False

    def kill_all_by_name(self, image_name: str) -> int:
        """Kill every running process whose image name matches.

        Matching ignores case and extension. The current process is never
        touched. Failures on individual processes are logged and skipped.

        Returns:
            Number of processes confirmed terminated
        """
        target = normalize_image_name(image_name)
        own_pid = os.getpid()
        signalled: list[psutil.Process] = []

        for proc in psutil.process_iter(["pid", "name"]):
            name = proc.info.get("name") or ""
            if proc.pid == own_pid or normalize_image_name(name) != target:
                continue
            if self._signal(proc, "kill"):
                signalled.append(proc)

        if not signalled:
            self._logger.debug("Sweep found no processes", image_name=target)
            return 0

        gone, alive = psutil.wait_procs(signalled, timeout=self.sweep_wait)
        for proc in alive:
            self._logger.warning("Process survived sweep", pid=proc.pid)
        self._logger.info("Sweep finished", image_name=target, killed=len(gone))
        return len(gone)

    def try_capture(
        self, path: str, args: Sequence[str] = (), timeout: float = 5.0
    ) -> str | None:
        """Run a short diagnostic command and return its stdout.

        A non-zero exit status still counts as having run (``lsof`` exits 1
        when nothing matches).

        Returns:
            The command's stdout, or None if it could not be run or timed out
        """
        try:
            result = subprocess.run(
                [path, *args],
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
                **_no_window_flags(),
            )
        except (OSError, subprocess.TimeoutExpired, ValueError) as e:
            self._logger.debug("Diagnostic command failed", command=path, error=str(e))
            return None
        return result.stdout or ""

    def run_and_capture(
        self, path: str, args: Sequence[str] = (), timeout: float = 5.0
    ) -> str:
        """Like :meth:`try_capture` but returns an empty string on any failure."""
        output = self.try_capture(path, args, timeout=timeout)
        return output if output is not None else ""

    def _signal(self, proc: psutil.Process, action: str) -> bool:
        try:
            getattr(proc, action)()
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            self._logger.warning("Access denied signalling process", pid=proc.pid)
            return False


def find_tunnel_binary(
    name: str = "frpc", search_dirs: Iterable[str | Path] = ()
) -> Path:
    """Find the tunnel binary in given directories, PATH or common locations.

    Args:
        name: Binary name without extension
        search_dirs: Directories checked before PATH (e.g. the app directory)

    Returns:
        Path to the executable

    Raises:
        ConfigError: If the binary cannot be found
    """
    candidates = executable_names(name)

    for directory in search_dirs:
        for candidate in candidates:
            path = Path(directory).expanduser() / candidate
            if path.is_file():
                return path

    found = shutil.which(name)
    if found:
        return Path(found)

    for directory in COMMON_BINARY_DIRS:
        for candidate in candidates:
            path = Path(os.path.expanduser(directory)) / candidate
            if path.is_file() and os.access(path, os.X_OK):
                return path

    raise ConfigError(f"{name} binary not found in PATH or common locations")
