"""SFTP session used to browse the remote filesystem through the tunnel."""

import stat
import threading
from collections.abc import Callable
from datetime import datetime
from types import TracebackType
from typing import Literal

import paramiko
import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..config import SessionCredentials
from ..exceptions import (
    AuthError,
    NotFoundError,
    ProtocolError,
    RemotePermissionError,
    TransportError,
    UnreachableError,
)
from ..logging import get_logger
from ..utils import join_remote_path, normalize_remote_path

PSEUDO_ENTRIES = frozenset({".", ".."})


class RemoteEntry(BaseModel):
    """Snapshot of one remote directory entry."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str = Field(description="Absolute POSIX path")
    is_directory: bool = False
    size: int = 0
    modified: datetime | None = None
    permissions: int = 0

    @classmethod
    def from_attributes(
        cls, path: str, attributes: paramiko.SFTPAttributes, name: str | None = None
    ) -> "RemoteEntry":
        mode = attributes.st_mode or 0
        mtime = attributes.st_mtime
        return cls(
            name=name if name is not None else attributes.filename,
            path=path,
            is_directory=stat.S_ISDIR(mode),
            size=attributes.st_size or 0,
            modified=datetime.fromtimestamp(mtime) if mtime is not None else None,
            permissions=stat.S_IMODE(mode),
        )


class RemoteSession:
    """One authenticated SFTP connection at a time.

    Connecting while a connection is open closes the old one first.
    """

    def __init__(
        self,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        logger: structlog.stdlib.BoundLogger | None = None,
    ):
        self._client_factory = client_factory
        self._logger = logger or get_logger(__name__)
        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._lock = threading.RLock()
        self.credentials: SessionCredentials | None = None

    @property
    def is_connected(self) -> bool:
        with self._lock:
            if self._client is None or self._sftp is None:
                return False
            transport = self._client.get_transport()
            return transport is not None and transport.is_active()

    def connect(self, credentials: SessionCredentials, timeout: float = 10.0) -> None:
        """Open the SFTP session.

        Raises:
            AuthError: Credentials rejected
            UnreachableError: Host unreachable or connect timed out
            ProtocolError: SSH handshake failed
        """
        with self._lock:
            if self._client is not None:
                self._logger.info("Replacing open remote session")
                self.disconnect()

            self._logger.info("Connecting remote session", **credentials.masked())
            client = self._client_factory()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    credentials.host,
                    port=credentials.port,
                    username=credentials.username,
                    password=credentials.password,
                    timeout=timeout,
                    banner_timeout=timeout,
                    auth_timeout=timeout,
                    look_for_keys=False,
                    allow_agent=False,
                )
                sftp = client.open_sftp()
            except paramiko.AuthenticationException as e:
                client.close()
                raise AuthError(f"Authentication failed for {credentials.username}") from e
            except paramiko.SSHException as e:
                client.close()
                raise ProtocolError(f"SSH handshake failed: {e}") from e
            except OSError as e:
                client.close()
                raise UnreachableError(
                    f"Cannot reach {credentials.host}:{credentials.port}: {e}"
                ) from e

            self._client = client
            self._sftp = sftp
            self.credentials = credentials
            self._logger.info("Remote session connected", host=credentials.host)

    def list_directory(self, path: str) -> list[RemoteEntry]:
        """List the immediate children of a remote directory.

        Entries come back in the order the server sends them, without the
        ``.`` and ``..`` pseudo entries.

        Raises:
            NotFoundError: Path does not exist
            RemotePermissionError: Access denied
            TransportError: Not connected or the session failed
        """
        directory = normalize_remote_path(path)
        sftp = self._require_sftp(directory)
        try:
            attributes = sftp.listdir_attr(directory)
        except FileNotFoundError as e:
            raise NotFoundError(f"No such remote directory: {directory}", directory) from e
        except PermissionError as e:
            raise RemotePermissionError(
                f"Permission denied: {directory}", directory
            ) from e
        except (OSError, EOFError, paramiko.SSHException) as e:
            raise TransportError(f"Listing {directory} failed: {e}", directory) from e

        return [
            RemoteEntry.from_attributes(join_remote_path(directory, attr.filename), attr)
            for attr in attributes
            if attr.filename not in PSEUDO_ENTRIES
        ]

    def stat(self, path: str) -> RemoteEntry:
        """Stat a single remote path."""
        target = normalize_remote_path(path)
        sftp = self._require_sftp(target)
        try:
            attributes = sftp.stat(target)
        except FileNotFoundError as e:
            raise NotFoundError(f"No such remote path: {target}", target) from e
        except PermissionError as e:
            raise RemotePermissionError(f"Permission denied: {target}", target) from e
        except (OSError, EOFError, paramiko.SSHException) as e:
            raise TransportError(f"Stat of {target} failed: {e}", target) from e
        name = target.rsplit("/", 1)[-1] or "/"
        return RemoteEntry.from_attributes(target, attributes, name=name)

    def disconnect(self) -> None:
        """Close the session. Safe to call when nothing is open."""
        with self._lock:
            sftp, client = self._sftp, self._client
            self._sftp = None
            self._client = None
            self.credentials = None

        if sftp is None and client is None:
            return
        for resource in (sftp, client):
            if resource is None:
                continue
            try:
                resource.close()
            except Exception as e:
                self._logger.warning("Error closing remote session", error=str(e))
        self._logger.info("Remote session disconnected")

    def _require_sftp(self, path: str) -> paramiko.SFTPClient:
        with self._lock:
            if self._sftp is None:
                raise TransportError("Remote session is not connected", path)
            return self._sftp

    def __enter__(self) -> "RemoteSession":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self.disconnect()
        return False

    def __repr__(self) -> str:
        target = self.credentials.host if self.credentials else None
        return f"RemoteSession(host={target!r}, connected={self.is_connected})"
