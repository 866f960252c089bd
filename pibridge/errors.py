"""Exception hierarchy for PiBridge.

Every error carries a ``reason`` enum so callers can branch on the failure
class without parsing messages.
"""

from __future__ import annotations

from enum import Enum, auto

import paramiko


class PiBridgeError(Exception):
    """Base class for all PiBridge errors."""


# ---------------------------------------------------------------------------
# Connection / session
# ---------------------------------------------------------------------------


class ConnectReason(Enum):
    """Why a connection attempt failed."""

    AUTH_REJECTED = auto()
    UNREACHABLE = auto()
    PROTOCOL_MISMATCH = auto()
    UNKNOWN_HOST = auto()


class ConnectionError(PiBridgeError):  # noqa: A001
    """Raised when a Session cannot be established."""

    def __init__(self, message: str, reason: ConnectReason) -> None:
        super().__init__(message)
        self.reason = reason


class UnknownHostError(ConnectionError):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can prompt the user and
    optionally save it to known_hosts via
    :func:`pibridge.session.accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        """Initialise with optional host-key metadata."""
        super().__init__(message, ConnectReason.UNKNOWN_HOST)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


class SessionReason(Enum):
    LOST = auto()
    DEGRADED = auto()
    CLOSED = auto()


class SessionError(PiBridgeError):
    """Raised when an operation on an established Session fails."""

    def __init__(self, message: str, reason: SessionReason = SessionReason.LOST) -> None:
        super().__init__(message)
        self.reason = reason


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class ListError(PiBridgeError):
    """Base class for remote directory listing failures."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class PathNotFoundError(ListError):
    pass


class PermissionDeniedError(ListError):
    pass


class UnparsableOutputError(ListError):
    """The remote listing command produced output we refuse to guess at."""

    def __init__(self, message: str, path: str = "", line: str = "") -> None:
        super().__init__(message, path)
        self.line = line


class ListSessionError(ListError):
    """A :class:`SessionError` surfaced while listing (never retried here)."""


# ---------------------------------------------------------------------------
# Resolution / transfer
# ---------------------------------------------------------------------------


class ResolutionReason(Enum):
    CYCLIC_SYMLINK = auto()
    SOURCE_MISSING = auto()
    DESTINATION_COLLISION = auto()


class ResolutionError(PiBridgeError):
    """Raised by ``submit`` when sources cannot be expanded into items."""

    def __init__(self, message: str, reason: ResolutionReason, path: str = "") -> None:
        super().__init__(message)
        self.reason = reason
        self.path = path


class FailureReason(Enum):
    """Terminal failure class of a single TransferItem."""

    CANCELLED = auto()
    PERMISSION_DENIED = auto()
    DISK_FULL = auto()
    PATH_NOT_FOUND = auto()
    CONNECTION_LOST = auto()
    TIMEOUT = auto()
    IO_ERROR = auto()

    @property
    def transient(self) -> bool:
        """True if a retry may plausibly succeed."""
        return self in (FailureReason.CONNECTION_LOST, FailureReason.TIMEOUT)


class TransferError(PiBridgeError):
    """A classified per-item transfer failure."""

    def __init__(self, message: str, reason: FailureReason) -> None:
        super().__init__(message)
        self.reason = reason

    @property
    def transient(self) -> bool:
        return self.reason.transient


class InvalidTransition(PiBridgeError, ValueError):
    """Raised when a TransferItem status change would break monotonicity."""
