"""Lifecycle supervisor for the tunnel process and its remote session."""

import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from queue import Empty, Queue
from types import TracebackType
from typing import IO, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .config import SessionCredentials, SupervisorSettings, TunnelConfig
from .events import LineClassifier, LogRecord, LogSink, Severity
from .exceptions import (
    AlreadyInProgress,
    ConfigError,
    ConnectError,
    FRPCManagerError,
    InvalidStateError,
    LaunchTimeout,
    ProcessExitedError,
    SpawnError,
    TeardownWarning,
)
from .logging import get_logger
from .ports import PortReclaimer
from .process import ManagedProcess, ProcessLauncher
from .remote.session import RemoteSession
from .remote.tree import RemoteTreeCache, TreeNode

STREAMS = ("stdout", "stderr")


class TunnelState(str, Enum):
    """Tunnel supervisor state."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class TeardownReport(BaseModel):
    """What happened during stop."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    process_exited: bool = True
    swept: int = 0
    port_free: bool = True
    session_closed: bool = True
    anomaly: bool = False
    warning: TeardownWarning | None = None
    errors: list[str] = Field(default_factory=list)

    @property
    def clean(self) -> bool:
        return self.port_free and not self.anomaly and not self.errors


@dataclass(frozen=True)
class _OutputLine:
    generation: int
    stream: str
    text: str


@dataclass(frozen=True)
class _StreamClosed:
    generation: int
    stream: str


_Event = _OutputLine | _StreamClosed | None


class TunnelSupervisor:
    """Owns one tunnel process, its readiness detection and teardown.

    ``start`` and ``stop`` are single-writer: a call made while another is in
    flight raises :class:`AlreadyInProgress`. Output lines are read on
    background threads and handed to one dispatcher thread per run through a
    queue; the dispatcher classifies them in order and performs the
    STARTING -> RUNNING/FAILED transitions.
    """

    def __init__(
        self,
        launcher: ProcessLauncher | None = None,
        reclaimer: PortReclaimer | None = None,
        session_factory: Callable[[], RemoteSession] | None = None,
        sink: LogSink | None = None,
        settings: SupervisorSettings | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        self.settings = settings or SupervisorSettings()
        self._logger = logger or get_logger(__name__)
        self.launcher = launcher or ProcessLauncher(logger=self._logger)
        self.reclaimer = reclaimer or PortReclaimer(
            self.launcher,
            delay=self.settings.port_reclaim_delay,
            kill_grace=self.settings.kill_grace,
            query_timeout=self.settings.diagnostic_timeout,
            logger=self._logger,
        )
        self._session_factory = session_factory or (
            lambda: RemoteSession(logger=self._logger)
        )
        self._sink = sink
        self._classifier = LineClassifier(self.settings.classifier)

        self._cond = threading.Condition(threading.RLock())
        self._transition_guard = threading.Lock()
        self._session_lock = threading.Lock()
        self._state = TunnelState.IDLE
        self._failure: FRPCManagerError | None = None
        self._generation = 0
        self._deadline = 0.0
        self._config: TunnelConfig | None = None
        self._credentials: SessionCredentials | None = None
        self._process: ManagedProcess | None = None
        self._events: Queue[_Event] | None = None
        self._session: RemoteSession | None = None
        self._tree: RemoteTreeCache | None = None
        self.last_connect_error: ConnectError | None = None

    # -- read-only views ------------------------------------------------

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def failure(self) -> FRPCManagerError | None:
        """Exception describing why the supervisor is FAILED."""
        return self._failure if self._state is TunnelState.FAILED else None

    @property
    def failure_reason(self) -> str | None:
        failure = self.failure
        return str(failure) if failure is not None else None

    @property
    def is_running(self) -> bool:
        return self._state is TunnelState.RUNNING

    @property
    def config(self) -> TunnelConfig | None:
        return self._config

    @property
    def pid(self) -> int | None:
        process = self._process
        return process.pid if process is not None else None

    @property
    def session(self) -> RemoteSession | None:
        return self._session

    @property
    def tree(self) -> RemoteTreeCache | None:
        return self._tree

    # -- lifecycle ------------------------------------------------------

    def start(
        self, config: TunnelConfig, credentials: SessionCredentials | None = None
    ) -> None:
        """Launch the tunnel process and begin watching for readiness.

        Returns as soon as the process is spawned and the state is STARTING.
        If ``credentials`` are given, a remote session is opened once the
        tunnel reports readiness.

        Raises:
            AlreadyInProgress: Another start/stop is running, or the tunnel
                is starting or stopping
            InvalidStateError: The tunnel is already running
            ConfigError: Executable or config file missing
            SpawnError: The process could not be created
        """
        if not self._transition_guard.acquire(blocking=False):
            raise AlreadyInProgress("Another start or stop is in progress")
        try:
            with self._cond:
                if self._state in (TunnelState.STARTING, TunnelState.STOPPING):
                    raise AlreadyInProgress(f"Tunnel is {self._state.value}")
                if self._state is TunnelState.RUNNING:
                    raise InvalidStateError("Tunnel is already running")

            try:
                config.validate_files()
            except ConfigError as e:
                self._emit(Severity.ERROR, f"Configuration error: {e}")
                raise

            self._emit(Severity.INFO, f"Starting tunnel: {config.executable_path}")
            try:
                process = self.launcher.launch(
                    config.executable_path, config.launch_args, config.working_dir
                )
            except SpawnError as e:
                with self._cond:
                    self._set_state(TunnelState.FAILED, e)
                raise

            with self._cond:
                self._generation += 1
                generation = self._generation
                self._config = config
                self._credentials = credentials
                self._process = process
                self._events = Queue()
                self._deadline = time.monotonic() + config.launch_timeout
                self.last_connect_error = None
                events = self._events
                self._set_state(TunnelState.STARTING)

            for name in STREAMS:
                stream = getattr(process, name)
                if stream is None:
                    events.put(_StreamClosed(generation, name))
                    continue
                threading.Thread(
                    target=self._read_stream,
                    args=(generation, name, stream, events),
                    name=f"tunnel-{name}-{process.pid}",
                    daemon=True,
                ).start()
            threading.Thread(
                target=self._dispatch,
                args=(generation, events),
                name=f"tunnel-dispatch-{process.pid}",
                daemon=True,
            ).start()
        finally:
            self._transition_guard.release()

    def stop(self) -> TeardownReport:
        """Tear the tunnel down and return to IDLE.

        Every step is attempted even if an earlier one fails. A port that is
        still occupied afterwards is reported via ``report.warning``.

        Raises:
            AlreadyInProgress: Another start/stop is running
        """
        if not self._transition_guard.acquire(blocking=False):
            raise AlreadyInProgress("Another start or stop is in progress")
        try:
            with self._cond:
                if self._state in (TunnelState.IDLE, TunnelState.FAILED):
                    self._logger.debug("Stop requested but tunnel is not active")
                    return TeardownReport()
                self._enter_stopping()
            return self._finish_teardown(unexpected_exit=False)
        finally:
            self._transition_guard.release()

    def check_health(self) -> TunnelState:
        """Notice a tunnel process that died and react to it.

        Meant to be called periodically by the host (the panel polls once a
        second). A process that exits while RUNNING triggers a full teardown
        back to IDLE, logged as an anomaly. One that exits while STARTING
        fails the launch.
        """
        with self._cond:
            state = self._state
            process = self._process
            generation = self._generation
        if process is None or process.poll() is None:
            return state

        if state is TunnelState.STARTING:
            self._fail_launch(generation, ProcessExitedError(process.last_exit_code))
            return self._state

        if state is not TunnelState.RUNNING:
            return state
        if not self._transition_guard.acquire(blocking=False):
            return self._state
        try:
            with self._cond:
                if self._state is not TunnelState.RUNNING or self._process is not process:
                    return self._state
                self._enter_stopping()
            self._emit(
                Severity.ERROR,
                f"Tunnel process exited unexpectedly with code {process.last_exit_code}",
            )
            self._finish_teardown(unexpected_exit=True)
        finally:
            self._transition_guard.release()
        return self._state

    def wait_for_state(self, *states: TunnelState, timeout: float | None = None) -> bool:
        """Block until the supervisor reaches one of ``states``."""
        with self._cond:
            return self._cond.wait_for(lambda: self._state in states, timeout=timeout)

    def wait_until_ready(self, timeout: float | None = None) -> None:
        """Block until the tunnel is RUNNING.

        Raises:
            LaunchTimeout: No readiness signal within the launch deadline
            ProcessExitedError: The process exited before becoming ready
            SpawnError: The process could not be started
            InvalidStateError: The tunnel is idle or stopping
        """
        if timeout is None:
            config = self._config
            launch = config.launch_timeout if config else 0.0
            timeout = launch + self.settings.kill_grace + 1.0
        with self._cond:
            self._cond.wait_for(
                lambda: self._state is not TunnelState.STARTING, timeout=timeout
            )
            state = self._state
            if state is TunnelState.RUNNING:
                return
            if state is TunnelState.FAILED and self._failure is not None:
                raise self._failure
            if state is TunnelState.STARTING:
                raise LaunchTimeout(f"Tunnel not ready after {timeout:.1f}s")
            raise InvalidStateError(f"Tunnel is {state.value}")

    def wait_for_session(self, timeout: float | None = None) -> RemoteSession | None:
        """Block until the post-readiness connect attempt has finished."""
        with self._cond:
            self._cond.wait_for(
                lambda: self._session is not None
                or self.last_connect_error is not None
                or (self._state is TunnelState.RUNNING and self._credentials is None)
                or self._state not in (TunnelState.STARTING, TunnelState.RUNNING),
                timeout=timeout,
            )
            return self._session

    def close(self) -> TeardownReport:
        """Stop the tunnel if active (used on application exit)."""
        return self.stop()

    # -- remote session -------------------------------------------------

    def connect_remote(self, credentials: SessionCredentials) -> RemoteSession:
        """Open (or replace) the remote session while the tunnel is RUNNING.

        Raises:
            InvalidStateError: The tunnel is not running
            ConnectError: The session could not be opened
        """
        with self._cond:
            if self._state is not TunnelState.RUNNING:
                raise InvalidStateError("Remote session needs a running tunnel")
            generation = self._generation
        session = self._open_session(generation, credentials)
        if session is None:
            raise self.last_connect_error or InvalidStateError(
                "Tunnel stopped while connecting"
            )
        return session

    def disconnect_remote(self) -> bool:
        """Close the remote session and drop its tree cache."""
        return self._close_session()

    def expand(self, target: TreeNode | str = "/") -> tuple[TreeNode, ...]:
        """Expand a node of the current session's tree.

        Raises:
            InvalidStateError: No remote session is open
            ListError: Listing failed
        """
        tree = self._tree
        if tree is None:
            raise InvalidStateError("No remote session is open")
        return tree.expand(target)

    # -- internals ------------------------------------------------------

    def _set_state(
        self, state: TunnelState, failure: FRPCManagerError | None = None
    ) -> None:
        # Caller holds self._cond
        previous = self._state
        self._state = state
        self._failure = failure
        self._cond.notify_all()
        self._logger.info(
            "Tunnel state changed",
            previous=previous.value,
            state=state.value,
            reason=str(failure) if failure else None,
        )
        if state is TunnelState.FAILED:
            self._emit(Severity.ERROR, f"Tunnel failed: {failure}")
        elif state is TunnelState.RUNNING:
            self._emit(Severity.SUCCESS, "Tunnel is running")
        else:
            self._emit(Severity.INFO, f"Tunnel {state.value}")

    def _enter_stopping(self) -> None:
        # Caller holds self._cond; invalidates the running dispatcher
        self._generation += 1
        if self._events is not None:
            self._events.put(None)
        self._set_state(TunnelState.STOPPING)

    def _finish_teardown(self, unexpected_exit: bool) -> TeardownReport:
        with self._cond:
            process = self._process
            config = self._config
        report = self._teardown(process, config, unexpected_exit)
        with self._cond:
            self._process = None
            self._credentials = None
            self._events = None
            self._set_state(TunnelState.IDLE)
        return report

    def _teardown(
        self,
        process: ManagedProcess | None,
        config: TunnelConfig | None,
        unexpected_exit: bool,
    ) -> TeardownReport:
        report = TeardownReport(anomaly=unexpected_exit)

        if process is not None:
            try:
                report.process_exited = self.launcher.kill_tree(
                    process, self.settings.kill_grace
                )
            except Exception as e:
                report.process_exited = False
                report.errors.append(f"kill: {e}")
                self._logger.error("Killing tunnel process failed", error=str(e))
            if not report.process_exited:
                report.anomaly = True
                self._emit(
                    Severity.WARNING,
                    "Tunnel process did not exit within grace period, sweeping",
                )

        if config is not None and self.settings.sweep_enabled:
            try:
                report.swept = self.launcher.kill_all_by_name(config.image_name)
            except Exception as e:
                report.errors.append(f"sweep: {e}")
                self._logger.error("Process sweep failed", error=str(e))
            if report.swept:
                self._emit(
                    Severity.INFO,
                    f"Swept {report.swept} stray {config.image_name} process(es)",
                )

        if config is not None:
            try:
                report.port_free = self.reclaimer.ensure_free(
                    config.target_port, self.settings.port_reclaim_attempts
                )
            except Exception as e:
                report.port_free = False
                report.errors.append(f"port: {e}")
                self._logger.error("Port reclaim failed", error=str(e))
            if not report.port_free:
                report.warning = TeardownWarning(config.target_port)
                self._emit(Severity.WARNING, str(report.warning))

        report.session_closed = self._close_session()

        if report.anomaly and report.port_free:
            self._logger.warning(
                "Tunnel teardown recovered from an anomaly",
                unexpected_exit=unexpected_exit,
                process_exited=report.process_exited,
                swept=report.swept,
            )
        return report

    def _read_stream(
        self, generation: int, name: str, stream: IO[str], events: "Queue[_Event]"
    ) -> None:
        try:
            for raw in iter(stream.readline, ""):
                events.put(_OutputLine(generation, name, raw.rstrip("\r\n")))
        except (OSError, ValueError) as e:
            self._logger.debug("Output stream closed", stream=name, error=str(e))
        finally:
            events.put(_StreamClosed(generation, name))

    def _dispatch(self, generation: int, events: "Queue[_Event]") -> None:
        open_streams = set(STREAMS)
        while True:
            with self._cond:
                if generation != self._generation:
                    return
                starting = self._state is TunnelState.STARTING
                deadline = self._deadline

            timeout = max(0.0, deadline - time.monotonic()) if starting else None
            try:
                event = events.get(timeout=timeout)
            except Empty:
                config = self._config
                limit = config.launch_timeout if config else 0.0
                self._fail_launch(
                    generation,
                    LaunchTimeout(f"No readiness signal within {limit:.1f}s"),
                )
                return

            if event is None or event.generation != generation:
                if event is None:
                    return
                continue

            if isinstance(event, _StreamClosed):
                open_streams.discard(event.stream)
                if not open_streams:
                    self._on_output_closed(generation)
                    return
                continue

            self._handle_line(generation, event)

    def _handle_line(self, generation: int, event: _OutputLine) -> None:
        text = event.text
        if not text.strip():
            return
        display = text if event.stream == "stdout" else f"[stderr] {text}"
        self._emit(self._classifier.classify(text), display)

        with self._cond:
            config = self._config
            if (
                generation != self._generation
                or self._state is not TunnelState.STARTING
                or config is None
                or not config.is_ready_line(text)
            ):
                return
            self._set_state(TunnelState.RUNNING)
            credentials = self._credentials

        if credentials is not None:
            self._open_session(generation, credentials)

    def _on_output_closed(self, generation: int) -> None:
        with self._cond:
            process = self._process
            starting = self._state is TunnelState.STARTING
            remaining = max(0.0, self._deadline - time.monotonic())
        if process is None:
            return
        if not starting:
            self._emit(Severity.WARNING, "Tunnel output closed")
            return
        try:
            process.popen.wait(timeout=remaining)
        except subprocess.TimeoutExpired:
            # Still alive with closed pipes past the deadline
            self._fail_launch(generation, LaunchTimeout("Tunnel output closed before ready"))
            return
        self._fail_launch(generation, ProcessExitedError(process.poll()))

    def _fail_launch(self, generation: int, failure: FRPCManagerError) -> bool:
        with self._cond:
            if generation != self._generation or self._state is not TunnelState.STARTING:
                return False
            process = self._process

        if process is not None:
            exited = self.launcher.kill_tree(process, self.settings.kill_grace)
            self._logger.info(
                "Killed tunnel process after failed launch", pid=process.pid, exited=exited
            )

        with self._cond:
            if generation != self._generation or self._state is not TunnelState.STARTING:
                return False
            self._generation += 1
            self._process = None
            self._credentials = None
            if self._events is not None:
                self._events.put(None)
            self._events = None
            self._set_state(TunnelState.FAILED, failure)
        return True

    def _open_session(
        self, generation: int, credentials: SessionCredentials
    ) -> RemoteSession | None:
        # One open at a time keeps a single live connection per supervisor
        with self._session_lock:
            self._close_session()
            session = self._session_factory()
            try:
                session.connect(credentials, timeout=self.settings.connect_timeout)
            except ConnectError as e:
                with self._cond:
                    self.last_connect_error = e
                    self._cond.notify_all()
                self._emit(Severity.ERROR, f"Remote session failed: {e}")
                return None

            replaced = None
            with self._cond:
                current = (
                    generation == self._generation
                    and self._state is TunnelState.RUNNING
                )
                if current:
                    replaced = self._session
                    self._session = session
                    self._tree = RemoteTreeCache(session, logger=self._logger)
                    self.last_connect_error = None
                    self._cond.notify_all()
            if replaced is not None:
                replaced.disconnect()
            if not current:
                session.disconnect()
                return None
        self._emit(
            Severity.SUCCESS,
            f"Remote session connected to {credentials.host}:{credentials.port}",
        )
        return session

    def _close_session(self) -> bool:
        with self._cond:
            session = self._session
            self._session = None
            self._tree = None
        if session is None:
            return True
        try:
            session.disconnect()
            return True
        except Exception as e:
            self._logger.error("Closing remote session failed", error=str(e))
            return False

    def _emit(self, severity: Severity, text: str) -> None:
        record = LogRecord(severity=severity, text=text)
        if severity is Severity.ERROR:
            self._logger.error(text, severity=severity.value)
        elif severity is Severity.WARNING:
            self._logger.warning(text, severity=severity.value)
        else:
            self._logger.info(text, severity=severity.value)
        if self._sink is None:
            return
        try:
            self._sink(record)
        except Exception as e:
            self._logger.error("Log sink failed", error=str(e))

    def __enter__(self) -> "TunnelSupervisor":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        try:
            self.close()
        except AlreadyInProgress as e:
            self._logger.error("Error during context exit", error=str(e))
        return False
