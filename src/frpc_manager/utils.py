"""Utility functions for the frpc manager."""

import os
import posixpath

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if (
        isinstance(port, bool)
        or not isinstance(port, int)
        or not (MIN_PORT <= port <= MAX_PORT)
    ):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def normalize_image_name(name: str) -> str:
    """Reduce a process image name to a comparable key.

    Matching is case-insensitive and ignores the extension, so ``FRPC.exe``
    and ``frpc`` compare equal.

    Args:
        name: Executable file name or path

    Returns:
        Lower-cased base name without extension
    """
    base = os.path.basename(name.replace("\\", "/"))
    stem, _ = os.path.splitext(base)
    return (stem or base).lower()


def executable_names(name: str) -> list[str]:
    """File names an executable called ``name`` may have on this platform.

    On Windows a bare name also matches ``name.exe``; the bare name is tried
    first.
    """
    if os.name == "nt" and not os.path.splitext(name)[1]:
        return [name, f"{name}.exe"]
    return [name]


def join_remote_path(parent: str, name: str) -> str:
    """Join a remote directory and child name into an absolute POSIX path."""
    if not parent.startswith("/"):
        parent = "/" + parent
    return posixpath.normpath(posixpath.join(parent, name))


def normalize_remote_path(path: str) -> str:
    """Normalize a remote path to its absolute POSIX form (``/`` for empty)."""
    if not path:
        return "/"
    return posixpath.normpath("/" + path.lstrip("/"))


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while preserving some characters for debugging.

    Args:
        value: Sensitive string to mask (e.g., SFTP password)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[-show_chars:]

