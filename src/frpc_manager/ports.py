"""Forcibly free a TCP port by killing whoever owns it."""

import os
import socket
import sys
import time
from collections.abc import Callable

import structlog

from .logging import get_logger
from .process import ProcessLauncher
from .utils import validate_port


def parse_lsof_pids(output: str) -> set[int]:
    """Parse ``lsof -t`` output (one pid per line)."""
    pids: set[int] = set()
    for line in output.splitlines():
        line = line.strip()
        if line.isdigit():
            pids.add(int(line))
    return pids


def parse_netstat_pids(output: str, port: int) -> set[int]:
    """Parse ``netstat -ano`` output for owners of a local TCP port.

    Lines look like ``TCP    0.0.0.0:7400    0.0.0.0:0    LISTENING    4242``.
    """
    pids: set[int] = set()
    suffix = f":{port}"
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 4 or fields[0].upper() != "TCP":
            continue
        if not fields[1].endswith(suffix):
            continue
        if fields[-1].isdigit():
            pid = int(fields[-1])
            # pid 0 is the idle process holding TIME_WAIT sockets
            if pid > 0:
                pids.add(pid)
    return pids


def port_is_bindable(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether a TCP listener could be bound on ``host:port`` right now."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        if sys.platform != "win32":
            # Lets TIME_WAIT leftovers count as free; an active listener still blocks
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


class PortReclaimer:
    """Finds the processes bound to a port and kills them until it is free.

    A port counts as free only when the owner query ran and found nobody
    and a test bind on the port succeeds.
    """

    def __init__(
        self,
        launcher: ProcessLauncher | None = None,
        delay: float = 0.5,
        kill_grace: float = 2.0,
        query_timeout: float = 5.0,
        logger: structlog.stdlib.BoundLogger | None = None,
        platform: str | None = None,
        bind_check: Callable[[int], bool] = port_is_bindable,
    ):
        self.launcher = launcher or ProcessLauncher()
        self.delay = delay
        self.kill_grace = kill_grace
        self.query_timeout = query_timeout
        self._logger = logger or get_logger(__name__)
        self.platform = platform or sys.platform
        self.bind_check = bind_check

    def find_owners(self, port: int) -> set[int] | None:
        """Return pids holding the local end of ``port`` (excluding ourselves).

        Processes merely connected *to* ``port`` are not owners.

        Returns:
            Owner pids, or None if the owner query could not be run
        """
        if self.platform == "win32":
            output = self.launcher.try_capture(
                "netstat", ["-ano", "-p", "TCP"], timeout=self.query_timeout
            )
            owners = parse_netstat_pids(output, port) if output is not None else None
        else:
            output = self.launcher.try_capture(
                "lsof",
                ["-t", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN"],
                timeout=self.query_timeout,
            )
            owners = parse_lsof_pids(output) if output is not None else None

        if owners is None:
            self._logger.warning("Port owner query failed", port=port)
            return None
        owners.discard(os.getpid())
        return owners

    def is_free(self, port: int) -> bool:
        """Query once: True only if no owner is found and the port can be bound."""
        owners = self.find_owners(port)
        return owners == set() and self.bind_check(port)

    def ensure_free(self, port: int, max_attempts: int = 3) -> bool:
        """Kill owners of ``port`` until it is verifiably unoccupied.

        Each attempt queries the owners, kills every one of them and waits a
        fixed delay. An owner that is already gone counts as killed. A query
        that cannot run never counts as "no owners".

        Args:
            port: TCP port to reclaim
            max_attempts: Number of query/kill rounds

        Returns:
            True if the final check shows the port unoccupied
        """
        validate_port(port)
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        for attempt in range(1, max_attempts + 1):
            owners = self.find_owners(port)
            if owners == set() and self.bind_check(port):
                self._logger.debug("Port is free", port=port, attempt=attempt)
                return True

            if owners:
                self._logger.info(
                    "Reclaiming port", port=port, owners=sorted(owners), attempt=attempt
                )
                for pid in sorted(owners):
                    if not self.launcher.kill_pid(pid, self.kill_grace):
                        self._logger.warning(
                            "Could not kill port owner", port=port, pid=pid
                        )
            if self.delay:
                time.sleep(self.delay)

        if self.is_free(port):
            return True
        self._logger.warning(
            "Port still occupied after reclaim attempts",
            port=port,
            attempts=max_attempts,
        )
        return False
