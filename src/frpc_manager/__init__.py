"""frpc manager - supervise a reverse-tunnel client and browse the remote side."""

from .api import managed_tunnel
from .config import (
    ClassifierRules,
    SessionCredentials,
    SupervisorSettings,
    TunnelConfig,
)
from .events import LineClassifier, LogRecord, LogSink, Severity, classify_line
from .exceptions import (
    AlreadyInProgress,
    AuthError,
    ConfigError,
    ConnectError,
    FRPCManagerError,
    InvalidStateError,
    LaunchTimeout,
    ListError,
    NotFoundError,
    ProcessError,
    ProcessExitedError,
    ProtocolError,
    RemotePermissionError,
    SpawnError,
    TeardownWarning,
    TransportError,
    UnreachableError,
)
from .logging import flush_logging, get_logger, setup_logging
from .ports import PortReclaimer
from .process import ManagedProcess, ProcessLauncher, find_tunnel_binary
from .remote import ExpansionResult, RemoteEntry, RemoteSession, RemoteTreeCache, TreeNode
from .supervisor import TeardownReport, TunnelState, TunnelSupervisor

__version__ = "0.1.0"


__all__ = [
    # High-level API
    "managed_tunnel",
    # Supervisor
    "TunnelSupervisor",
    "TunnelState",
    "TeardownReport",
    # Configuration
    "TunnelConfig",
    "SessionCredentials",
    "SupervisorSettings",
    "ClassifierRules",
    # Output records
    "LogRecord",
    "LogSink",
    "Severity",
    "LineClassifier",
    "classify_line",
    # Processes and ports
    "ProcessLauncher",
    "ManagedProcess",
    "PortReclaimer",
    "find_tunnel_binary",
    # Remote browsing
    "RemoteSession",
    "RemoteEntry",
    "RemoteTreeCache",
    "TreeNode",
    "ExpansionResult",
    # Exceptions
    "FRPCManagerError",
    "ConfigError",
    "ProcessError",
    "SpawnError",
    "ProcessExitedError",
    "LaunchTimeout",
    "AlreadyInProgress",
    "InvalidStateError",
    "ConnectError",
    "AuthError",
    "UnreachableError",
    "ProtocolError",
    "ListError",
    "NotFoundError",
    "RemotePermissionError",
    "TransportError",
    "TeardownWarning",
    # Logging
    "setup_logging",
    "get_logger",
    "flush_logging",
]
