"""Cross-platform path normalisation and validation utilities.

Remote paths are always POSIX; local paths are ``pathlib.Path`` objects.
All conversion between the two happens here, at the boundary, so the
transfer strategies only ever see already-normalised strings.
"""

from __future__ import annotations

import logging
import os
import posixpath
import sys
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".pibridge-part"


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe to hand to the remote shell or SFTP.

    Rejects empty paths, null bytes and path-traversal sequences (``..``).
    """
    if not path:
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def normalize_remote_path(path: str) -> str:
    """Return *path* as a clean POSIX path.

    Windows-style separators are converted, duplicate and trailing slashes
    collapsed.

    Raises:
        ValueError: If the result fails :func:`validate_remote_path`.
    """
    cleaned = path.replace("\\", "/").strip()
    if not validate_remote_path(cleaned):
        raise ValueError(f"Invalid remote path: {path!r}")
    if cleaned != "/":
        cleaned = posixpath.normpath(cleaned)
        if cleaned.startswith("//"):
            cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem.

    Symlinks are not resolved; the resolver needs to see them.
    """
    return Path(os.path.abspath(Path(path).expanduser()))


def remote_parent(path: str) -> str:
    """Directory part of a remote path (``/`` for top-level entries)."""
    return posixpath.dirname(path.rstrip("/")) or "/"


def is_remote_descendant(path: str, ancestor: str) -> bool:
    """True if *path* equals *ancestor* or lies beneath it."""
    if ancestor == "/":
        return path.startswith("/")
    return path == ancestor or path.startswith(ancestor.rstrip("/") + "/")


def shell_quote(value: str) -> str:
    """Single-quote *value* for a POSIX shell."""
    return "'" + value.replace("'", "'\\''") + "'"


def local_is_case_insensitive() -> bool:
    """Best guess at whether the local filesystem folds case."""
    return sys.platform in ("win32", "darwin")


def temp_name(path: str) -> str:
    """Name used for a file while it is still being written."""
    return path + TEMP_SUFFIX
