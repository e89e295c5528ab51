"""Custom exceptions for the frpc manager."""


class FRPCManagerError(Exception):
    """Base exception for all frpc manager errors."""

    pass


class ConfigError(FRPCManagerError):
    """Raised when tunnel configuration is missing or malformed."""

    pass


class ProcessError(FRPCManagerError):
    """Raised when tunnel process operations fail."""

    pass


class SpawnError(ProcessError):
    """Raised when the OS refuses to create the tunnel process."""

    pass


class ProcessExitedError(ProcessError):
    """Raised when the tunnel process exits before signalling readiness."""

    def __init__(self, exit_code: int | None):
        super().__init__(f"Tunnel process exited with code {exit_code} before ready")
        self.exit_code = exit_code


class LaunchTimeout(ProcessError):
    """Raised when no readiness signal arrives before the launch deadline."""

    pass


class AlreadyInProgress(FRPCManagerError):
    """Raised when a start/stop or expansion is already in flight."""

    pass


class InvalidStateError(FRPCManagerError):
    """Raised when an operation is not allowed in the current tunnel state."""

    pass


class ConnectError(FRPCManagerError):
    """Raised when a remote session cannot be opened."""

    pass


class AuthError(ConnectError):
    """Raised when the remote host rejects the credentials."""

    pass


class UnreachableError(ConnectError):
    """Raised when the remote host cannot be reached or times out."""

    pass


class ProtocolError(ConnectError):
    """Raised when the SSH handshake fails."""

    pass


class ListError(FRPCManagerError):
    """Raised when a remote directory cannot be listed."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class NotFoundError(ListError):
    """Raised when a remote path does not exist."""

    pass


class RemotePermissionError(ListError):
    """Raised when the remote side denies access to a path."""

    pass


class TransportError(ListError):
    """Raised when the session fails while listing."""

    pass


class TeardownWarning(UserWarning):
    """Port still occupied after teardown. Reported, never raised."""

    def __init__(self, port: int, message: str | None = None):
        super().__init__(message or f"Port {port} is still occupied after teardown")
        self.port = port
