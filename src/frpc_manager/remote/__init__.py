"""Remote filesystem browsing over SFTP."""

from .session import RemoteEntry, RemoteSession
from .tree import ExpansionResult, RemoteTreeCache, TreeNode

__all__ = [
    "RemoteEntry",
    "RemoteSession",
    "RemoteTreeCache",
    "TreeNode",
    "ExpansionResult",
]
