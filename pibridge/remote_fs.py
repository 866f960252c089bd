"""Remote directory listings with a per-directory snapshot cache.

Listings come from ``ls -la`` run through the session, so the only thing
the remote needs is a POSIX shell with GNU coreutils.  Every parsed entry
is an immutable :class:`RemoteEntry`; a refresh replaces a directory's
tuple of entries wholesale, so readers never see a half-updated listing.
"""

from __future__ import annotations

import logging
import posixpath
import re
import stat as _stat
import threading
from dataclasses import dataclass
from enum import Enum

from pibridge.errors import (
    ListSessionError,
    PathNotFoundError,
    PermissionDeniedError,
    ResolutionError,
    ResolutionReason,
    SessionError,
    UnparsableOutputError,
)
from pibridge.utils.path_helpers import (
    is_remote_descendant,
    normalize_remote_path,
    posix_join,
    shell_quote,
)

logger = logging.getLogger(__name__)

_LS = "LC_ALL=C ls --time-style=+%s --quoting-style=literal"

# perms  links  owner  group  size | "major, minor"  epoch  name
_LINE_RE = re.compile(
    r"^(?P<type>[-dlcbps])(?P<perms>[-rwxsStT]{9})[.+@]?\s+"
    r"\d+\s+\S+\s+\S+\s+"
    r"(?P<size>\d+|\d+,\s*\d+)\s+"
    r"(?P<mtime>-?\d+) "
    r"(?P<name>.+)$"
)


class EntryKind(Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


_KINDS = {"-": EntryKind.FILE, "d": EntryKind.DIRECTORY, "l": EntryKind.SYMLINK}


@dataclass(frozen=True)
class RemoteEntry:
    """Snapshot of one remote filesystem object."""

    path: str
    kind: EntryKind
    size_bytes: int
    modified_at: float  # epoch seconds
    permissions: str  # e.g. "rwxr-xr-x"
    link_target: str | None = None

    @property
    def name(self) -> str:
        return posixpath.basename(self.path) or self.path

    @property
    def is_dir(self) -> bool:
        return self.kind == EntryKind.DIRECTORY

    @property
    def is_hidden(self) -> bool:
        return self.name.startswith(".")

    @property
    def mode(self) -> int:
        """Permission bits as an integer (``0o755`` for ``rwxr-xr-x``)."""
        bits = 0
        for char, flag in zip(
            self.permissions,
            (
                _stat.S_IRUSR, _stat.S_IWUSR, _stat.S_IXUSR,
                _stat.S_IRGRP, _stat.S_IWGRP, _stat.S_IXGRP,
                _stat.S_IROTH, _stat.S_IWOTH, _stat.S_IXOTH,
            ),
        ):
            if char not in "-ST":
                bits |= flag
        return bits


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_ls_line(line: str, directory: str | None = None) -> RemoteEntry | None:
    """Parse one ``ls -l`` line.

    *directory* is joined with the listed name; pass ``None`` for ``ls -d``
    output where the name already is the full path.  Returns ``None`` for
    ``.``/``..`` and special files (devices, sockets, fifos).

    Raises:
        UnparsableOutputError: The line does not look like ``ls -l`` output.
    """
    match = _LINE_RE.match(line)
    if not match:
        raise UnparsableOutputError(
            f"Cannot parse listing line: {line!r}", path=directory or "", line=line
        )

    kind = _KINDS.get(match["type"])
    name = match["name"]
    target = None
    if kind == EntryKind.SYMLINK and " -> " in name:
        name, target = name.split(" -> ", 1)

    if name in (".", "..") and directory is not None:
        return None
    if kind is None:
        logger.debug("Skipping special file %r in %s", name, directory)
        return None

    size = int(match["size"]) if "," not in match["size"] else 0
    path = posix_join(directory, name) if directory is not None else name
    return RemoteEntry(
        path=path,
        kind=kind,
        size_bytes=size,
        modified_at=float(match["mtime"]),
        permissions=match["perms"],
        link_target=target,
    )


def parse_listing(text: str, directory: str) -> tuple[RemoteEntry, ...]:
    """Parse full ``ls -la`` output for *directory*, sorted by name."""
    entries: list[RemoteEntry] = []
    for line in text.splitlines():
        if not line.strip() or line.startswith("total "):
            continue
        entry = parse_ls_line(line, directory)
        if entry is not None:
            entries.append(entry)
    entries.sort(key=lambda e: e.name)
    return tuple(entries)


def _raise_for_stderr(stderr: str, path: str) -> None:
    """Map a failed remote command's stderr to a ListError subclass."""
    lowered = stderr.lower()
    if "too many levels of symbolic links" in lowered:
        raise ResolutionError(
            f"Symlink loop at {path}", ResolutionReason.CYCLIC_SYMLINK, path=path
        )
    if "no such file" in lowered or "not a directory" in lowered:
        raise PathNotFoundError(f"Remote path not found: {path}", path=path)
    if "permission denied" in lowered:
        raise PermissionDeniedError(f"Permission denied: {path}", path=path)
    raise UnparsableOutputError(
        f"Listing {path} failed: {stderr.strip() or 'no output'}", path=path
    )


# ---------------------------------------------------------------------------
# RemoteFilesystemView
# ---------------------------------------------------------------------------


class RemoteFilesystemView:
    """Lists remote directories and remembers the last good listing of each.

    Cache keys are ``(host identity, path)`` so one view can serve several
    sessions.  ``invalidate`` drops a path and all its descendants.
    """

    def __init__(self) -> None:
        self._cache: dict[tuple[tuple, str], tuple[RemoteEntry, ...]] = {}
        self._lock = threading.Lock()
        self.queries = 0

    def _run(self, session, command: str):
        self.queries += 1
        try:
            return session.execute(command)
        except SessionError as exc:
            raise ListSessionError(str(exc)) from exc

    def list(self, session, path: str) -> tuple[RemoteEntry, ...]:
        """Return the entries of directory *path*, from cache when possible.

        Raises:
            PathNotFoundError, PermissionDeniedError, UnparsableOutputError,
            ListSessionError
        """
        path = normalize_remote_path(path)
        key = (session.host.identity, path)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Listing cache hit for %s", path)
            return cached

        target = path if path.endswith("/") else path + "/"
        result = self._run(session, f"{_LS} -la -- {shell_quote(target)}")
        if not result.ok:
            _raise_for_stderr(result.stderr, path)
        entries = parse_listing(result.stdout, path)

        with self._lock:
            self._cache[key] = entries
        logger.debug("Listed %d entries in %s", len(entries), path)
        return entries

    def stat(self, session, path: str, follow: bool = False) -> RemoteEntry | None:
        """Return metadata for *path*, or ``None`` if it does not exist.

        With *follow* the entry describes the symlink's target.

        Raises:
            PermissionDeniedError, UnparsableOutputError, ListSessionError,
            ResolutionError: ``CYCLIC_SYMLINK`` when following a link loop.
        """
        path = normalize_remote_path(path)
        flags = "-ladL" if follow else "-lad"
        result = self._run(session, f"{_LS} {flags} -- {shell_quote(path)}")
        if not result.ok:
            try:
                _raise_for_stderr(result.stderr, path)
            except PathNotFoundError:
                return None
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        if len(lines) != 1:
            raise UnparsableOutputError(
                f"Expected one line of stat output for {path}, got {len(lines)}", path=path
            )
        entry = parse_ls_line(lines[0])
        if entry is None:
            return None
        # ls -d echoes the path as given; keep our normalised spelling.
        return RemoteEntry(
            path=path,
            kind=entry.kind,
            size_bytes=entry.size_bytes,
            modified_at=entry.modified_at,
            permissions=entry.permissions,
            link_target=entry.link_target,
        )

    def canonical_path(self, session, path: str) -> str:
        """Fully resolve *path* (all symlinks) on the remote host.

        Raises:
            ResolutionError: ``CYCLIC_SYMLINK`` if resolution loops.
            PathNotFoundError: If *path* does not exist.
        """
        path = normalize_remote_path(path)
        result = self._run(session, f"readlink -e -- {shell_quote(path)}")
        resolved = result.stdout.strip()
        if not result.ok or not resolved:
            # A loop makes the following stat raise CYCLIC_SYMLINK; a missing
            # or dangling path comes back as None.
            if self.stat(session, path, follow=True) is None:
                raise PathNotFoundError(f"Remote path not found: {path}", path=path)
            raise UnparsableOutputError(f"readlink gave no result for {path}", path=path)
        return resolved

    def cached(self, session, path: str) -> tuple[RemoteEntry, ...] | None:
        """Cached listing for *path* without querying the remote."""
        key = (session.host.identity, normalize_remote_path(path))
        with self._lock:
            return self._cache.get(key)

    def invalidate(self, path: str) -> None:
        """Forget the listing of *path* and of everything beneath it."""
        path = normalize_remote_path(path)
        with self._lock:
            stale = [key for key in self._cache if is_remote_descendant(key[1], path)]
            for key in stale:
                del self._cache[key]
        if stale:
            logger.debug("Invalidated %d cached listing(s) under %s", len(stale), path)

    def invalidate_all(self) -> None:
        with self._lock:
            self._cache.clear()
