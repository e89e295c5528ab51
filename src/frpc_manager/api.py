"""High-level API for running a tunnel with a remote browser.

This module provides a simple context manager for scripts and tests that
want a ready tunnel for the duration of a block.
"""

from collections.abc import Iterator
from contextlib import contextmanager

from .config import SessionCredentials, SupervisorSettings, TunnelConfig
from .events import LogSink
from .logging import get_logger
from .supervisor import TunnelSupervisor

logger = get_logger(__name__)


@contextmanager
def managed_tunnel(
    config: TunnelConfig,
    credentials: SessionCredentials | None = None,
    *,
    settings: SupervisorSettings | None = None,
    sink: LogSink | None = None,
    ready_timeout: float | None = None,
    supervisor: TunnelSupervisor | None = None,
) -> Iterator[TunnelSupervisor]:
    """Start a tunnel, wait for readiness and always tear it down.

    Args:
        config: Tunnel launch configuration
        credentials: Optional remote session credentials
        settings: Supervisor settings (defaults used if None)
        sink: Receiver for classified output and state records
        ready_timeout: Seconds to wait for readiness (launch timeout if None)
        supervisor: Existing supervisor to drive instead of a new one

    Yields:
        A RUNNING supervisor

    Raises:
        ConfigError, SpawnError, LaunchTimeout, ProcessExitedError: If the
            tunnel never becomes ready

    Example:
        >>> with managed_tunnel(config, creds) as tunnel:
        ...     tunnel.wait_for_session(timeout=10)
        ...     print([node.name for node in tunnel.expand("/")])
    """
    supervisor = supervisor or TunnelSupervisor(settings=settings, sink=sink)
    supervisor.start(config, credentials)
    try:
        supervisor.wait_until_ready(timeout=ready_timeout)
        yield supervisor
    finally:
        report = supervisor.stop()
        if report.warning is not None:
            logger.warning(
                "Tunnel teardown left port occupied", port=report.warning.port
            )
