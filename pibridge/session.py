"""SSH session lifecycle management for PiBridge.

A :class:`SessionManager` owns every :class:`Session` it creates: it is the
only component allowed to change a session's state, reconnect it or close
it.  Callers hold a Session value and pass it explicitly to the filesystem
view and the transfer coordinator; there is no process-wide connection.

State machine::

    CONNECTING -> READY -> DEGRADED -> READY (transparent reconnect)
                              \\-> CLOSED

A transient I/O failure moves a session to DEGRADED and triggers exactly one
reconnect with the original credentials.  If the retried operation fails
too, :class:`~pibridge.errors.SessionError` (``LOST``) reaches the caller and
higher layers decide whether to retry.
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional, TypeVar, Union

import keyring
import paramiko

from pibridge.errors import (
    ConnectionError,
    ConnectReason,
    SessionError,
    SessionReason,
    UnknownHostError,
)

logger = logging.getLogger(__name__)

_KEYRING_SERVICE = "PiBridge"

_DEFAULT_TIMEOUT = 15.0  # seconds
_DEFAULT_KEEPALIVE_INTERVAL = 30  # seconds
_COMMAND_TIMEOUT = 30  # seconds

# Errors that mean "the transport went away", as opposed to a remote-side
# refusal such as a missing file.
_TRANSIENT_ERRORS = (
    socket.timeout,
    EOFError,
    ConnectionResetError,
    ConnectionAbortedError,
    BrokenPipeError,
    paramiko.SSHException,
)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Host description
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordAuth:
    """Password authentication.  ``secret=None`` means "ask the OS keyring"."""

    secret: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class KeyFileAuth:
    """Private-key authentication."""

    path: str
    passphrase: str | None = field(default=None, repr=False)


Auth = Union[PasswordAuth, KeyFileAuth]


@dataclass(frozen=True)
class RemoteHost:
    """Where and as whom to connect.  Identity is ``(host, port, username)``."""

    host: str
    port: int = 22
    username: str = "pi"
    auth: Auth = field(default_factory=PasswordAuth, compare=False)

    @property
    def identity(self) -> tuple[str, int, str]:
        return (self.host, self.port, self.username)

    @property
    def profile_key(self) -> str:
        """Keyring account key for this host (user@host)."""
        return f"{self.username}@{self.host}"

    def __str__(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Capture fingerprint and raise :exc:`UnknownHostError`."""
        fingerprint = ":".join(f"{b:02x}" for b in key.get_fingerprint())
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*; cleanup errors on an already-dead socket are only logged."""
    try:
        client.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


def accept_host_key(hostname: str, key: paramiko.PKey) -> None:
    """Append *key* for *hostname* to ``~/.ssh/known_hosts`` and save.

    Creates the file and ``.ssh/`` directory if they do not exist.
    """
    ssh_dir = Path.home() / ".ssh"
    ssh_dir.mkdir(mode=0o700, exist_ok=True)
    known_hosts_path = ssh_dir / "known_hosts"

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to known_hosts", hostname)


def store_password(host: RemoteHost, password: str) -> None:
    """Store *password* in the OS keyring for *host*."""
    keyring.set_password(_KEYRING_SERVICE, host.profile_key, password)
    logger.debug("Password stored in keyring for %s", host.profile_key)


def delete_password(host: RemoteHost) -> None:
    """Remove the stored password for *host* from the OS keyring."""
    try:
        keyring.delete_password(_KEYRING_SERVICE, host.profile_key)
    except keyring.errors.PasswordDeleteError:
        logger.debug("No keyring entry to delete for %s", host.profile_key)
        return
    logger.debug("Password deleted from keyring for %s", host.profile_key)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class SessionState(Enum):
    """States for the SSH session lifecycle."""

    CONNECTING = auto()
    READY = auto()
    DEGRADED = auto()
    CLOSED = auto()


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


StateChangeCallback = Callable[["Session", SessionState, Optional[str]], None]


class Session:
    """One authenticated connection to a :class:`RemoteHost`.

    The convenience methods delegate to the owning :class:`SessionManager`,
    which applies the reconnect policy.
    """

    def __init__(self, host: RemoteHost, manager: SessionManager) -> None:
        self.host = host
        self._manager = manager
        self._state = SessionState.CONNECTING
        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._password: str | None = None
        self._lock = threading.RLock()
        self._reconnect_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._keepalive_thread: threading.Thread | None = None

    @property
    def state(self) -> SessionState:
        """Current session state (thread-safe read)."""
        with self._lock:
            return self._state

    @property
    def password(self) -> str | None:
        """Resolved password for password-auth hosts (used by external tools)."""
        return self._password

    def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        return self._manager.execute(self, command, timeout=timeout)

    def sftp(self) -> paramiko.SFTPClient:
        return self._manager.sftp(self)

    def mark_degraded(self, message: str | None = None) -> None:
        self._manager.mark_degraded(self, message)

    def close(self) -> None:
        self._manager.close(self)

    def __repr__(self) -> str:
        return f"<Session {self.host} {self.state.name}>"


# ---------------------------------------------------------------------------
# SessionManager
# ---------------------------------------------------------------------------


class SessionManager:
    """Creates sessions and owns their reconnect / keepalive / close policy.

    Thread-safety:
    - Each session's ``_lock`` protects its state and client handles.
    - Each session's ``_reconnect_lock`` lets only one thread reconnect it.
    - Keepalive runs in one daemon thread per session.
    """

    def __init__(
        self,
        timeout: float = _DEFAULT_TIMEOUT,
        keepalive_interval: float = _DEFAULT_KEEPALIVE_INTERVAL,
        on_state_change: StateChangeCallback | None = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        """Initialise the manager.

        Args:
            timeout: TCP / banner / auth timeout in seconds.
            keepalive_interval: Seconds between keepalive probes; 0 disables
                the background thread.
            on_state_change: Called with ``(session, new_state, message)`` on
                every transition.
            client_factory: Builds the underlying SSH client (tests swap it).
        """
        self.timeout = timeout
        self.keepalive_interval = keepalive_interval
        self._on_state_change = on_state_change
        self._client_factory = client_factory
        self._sessions: list[Session] = []
        self._sessions_lock = threading.Lock()

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def _set_state(self, session: Session, new_state: SessionState, message: str | None = None) -> None:
        """Update state and fire the state-change callback."""
        with session._lock:
            if session._state == new_state:
                return
            session._state = new_state
        logger.debug(
            "Session %s → %s%s",
            session.host,
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(session, new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    def mark_degraded(self, session: Session, message: str | None = None) -> None:
        """Flag *session* as suspect; the next operation reconnects first."""
        if session.state == SessionState.READY:
            self._set_state(session, SessionState.DEGRADED, message)

    # ------------------------------------------------------------------
    # Connect / close
    # ------------------------------------------------------------------

    def connect(self, host: RemoteHost) -> Session:
        """Open a new authenticated session to *host*.

        Raises:
            UnknownHostError: Host key is not in known_hosts (carries fingerprint).
            ConnectionError: ``AUTH_REJECTED``, ``UNREACHABLE`` or
                ``PROTOCOL_MISMATCH``.
        """
        session = Session(host, self)
        logger.info("Connecting to %s", host)
        self._open_transport(session)
        self._set_state(session, SessionState.READY)
        with self._sessions_lock:
            self._sessions.append(session)
        self._start_keepalive_thread(session)
        logger.info("Connected to %s", host)
        return session

    def _resolve_password(self, host: RemoteHost, auth: PasswordAuth) -> str | None:
        if auth.secret is not None:
            return auth.secret
        return keyring.get_password(_KEYRING_SERVICE, host.profile_key)

    def _open_transport(self, session: Session) -> None:
        """Build a fresh SSH client + SFTP channel and attach it to *session*."""
        host = session.host
        client = self._client_factory()
        known_hosts_path = Path.home() / ".ssh" / "known_hosts"
        if known_hosts_path.exists():
            client.load_host_keys(str(known_hosts_path))
        client.set_missing_host_key_policy(_CapturingPolicy())

        connect_kwargs: dict = {
            "hostname": host.host,
            "port": host.port,
            "username": host.username,
            "timeout": self.timeout,
            "banner_timeout": self.timeout,
            "auth_timeout": self.timeout,
            "allow_agent": True,
            "look_for_keys": False,
        }
        password: str | None = None
        if isinstance(host.auth, KeyFileAuth):
            connect_kwargs["key_filename"] = host.auth.path
            if host.auth.passphrase:
                connect_kwargs["passphrase"] = host.auth.passphrase
        else:
            password = self._resolve_password(host, host.auth)
            if password:
                connect_kwargs["password"] = password

        try:
            client.connect(**connect_kwargs)
            sftp = client.open_sftp()
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {host.host} — check ~/.ssh/known_hosts",
                hostname=host.host,
            ) from exc
        except paramiko.AuthenticationException as exc:
            _close_client_safely(client)
            raise ConnectionError(
                f"Authentication rejected by {host}: {exc}", ConnectReason.AUTH_REJECTED
            ) from exc
        except (socket.timeout, OSError) as exc:
            _close_client_safely(client)
            raise ConnectionError(
                f"Cannot reach {host}: {exc}", ConnectReason.UNREACHABLE
            ) from exc
        except paramiko.SSHException as exc:
            _close_client_safely(client)
            raise ConnectionError(
                f"SSH negotiation with {host} failed: {exc}", ConnectReason.PROTOCOL_MISMATCH
            ) from exc

        # Large window so big writes don't stall waiting for ACKs.
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(int(self.keepalive_interval) or _DEFAULT_KEEPALIVE_INTERVAL)
            transport.default_window_size = 64 * 1024 * 1024

        with session._lock:
            session._client = client
            session._sftp = sftp
            session._password = password

    def _reconnect(self, session: Session) -> None:
        """Drop the current transport and open a new one with the same credentials."""
        logger.warning("Reconnecting session %s", session.host)
        with session._lock:
            old_client, session._client, session._sftp = session._client, None, None
        if old_client is not None:
            _close_client_safely(old_client)
        self._open_transport(session)
        self._set_state(session, SessionState.READY, "reconnected")
        logger.info("Session %s reconnected", session.host)

    def close(self, session: Session) -> None:
        """Close *session*; calling it again is a no-op."""
        with session._lock:
            if session._state == SessionState.CLOSED:
                return
            session._stop_event.set()
            sftp, session._sftp = session._sftp, None
            client, session._client = session._client, None
        if sftp is not None:
            try:
                sftp.close()
            except Exception as exc:
                logger.debug("Ignoring error while closing SFTP channel: %s", exc)
        if client is not None:
            _close_client_safely(client)
        self._set_state(session, SessionState.CLOSED)

        thread = session._keepalive_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2)
        session._keepalive_thread = None
        with self._sessions_lock:
            if session in self._sessions:
                self._sessions.remove(session)
        logger.info("Closed session %s", session.host)

    def close_all(self) -> None:
        with self._sessions_lock:
            sessions = list(self._sessions)
        for session in sessions:
            self.close(session)

    # ------------------------------------------------------------------
    # Reconnect policy
    # ------------------------------------------------------------------

    def _call(self, session: Session, operation: Callable[[Session], T], what: str) -> T:
        """Run *operation*, reconnecting once on a transient transport failure."""
        state = session.state
        if state == SessionState.CLOSED:
            raise SessionError(f"Session {session.host} is closed", SessionReason.CLOSED)

        if state != SessionState.DEGRADED:
            try:
                return operation(session)
            except _TRANSIENT_ERRORS as exc:
                logger.warning("%s on %s failed: %s", what, session.host, exc)
                self._set_state(session, SessionState.DEGRADED, str(exc))

        try:
            with session._reconnect_lock:
                state = session.state
                if state == SessionState.CLOSED:
                    raise SessionError(f"Session {session.host} is closed", SessionReason.CLOSED)
                # Another thread may have reconnected while we waited.
                if state == SessionState.DEGRADED:
                    self._reconnect(session)
            return operation(session)
        except (ConnectionError, *_TRANSIENT_ERRORS) as exc:
            self.mark_degraded(session, str(exc))
            raise SessionError(
                f"{what} on {session.host} failed after reconnect: {exc}", SessionReason.LOST
            ) from exc

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def execute(self, session: Session, command: str, timeout: float | None = None) -> CommandResult:
        """Run *command* remotely and collect its output.

        Raises:
            SessionError: Session closed, or lost after one reconnect attempt.
        """

        def _run(s: Session) -> CommandResult:
            client = s._client
            if client is None:
                raise EOFError("no SSH client")
            _, stdout, stderr = client.exec_command(command, timeout=timeout or _COMMAND_TIMEOUT)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
            return CommandResult(out, err, exit_code)

        result = self._call(session, _run, "exec")
        logger.debug("exec %r → %d", command, result.exit_code)
        return result

    def sftp(self, session: Session) -> paramiko.SFTPClient:
        """Return a live SFTP client for *session*, reconnecting if needed."""

        def _get(s: Session) -> paramiko.SFTPClient:
            client, sftp = s._client, s._sftp
            transport = client.get_transport() if client else None
            if sftp is None or transport is None or not transport.is_active():
                raise EOFError("SSH transport is not active")
            return sftp

        return self._call(session, _get, "sftp")

    def keepalive(self, session: Session) -> None:
        """Probe the transport; a dead one degrades the session."""
        if session.state != SessionState.READY:
            return
        client = session._client
        transport = client.get_transport() if client else None
        try:
            if transport is None or not transport.is_active():
                raise EOFError("transport inactive")
            transport.send_ignore()
        except _TRANSIENT_ERRORS as exc:
            logger.warning("Keepalive for %s failed: %s", session.host, exc)
            self.mark_degraded(session, f"keepalive failed: {exc}")

    def _start_keepalive_thread(self, session: Session) -> None:
        """Spawn a daemon thread to monitor transport liveness."""
        if self.keepalive_interval <= 0:
            return
        session._keepalive_thread = threading.Thread(
            target=self._keepalive_loop,
            args=(session,),
            name=f"keepalive-{session.host.host}",
            daemon=True,
        )
        session._keepalive_thread.start()

    def _keepalive_loop(self, session: Session) -> None:
        logger.debug("Keepalive thread started for %s", session.host)
        while not session._stop_event.wait(timeout=self.keepalive_interval):
            if session.state == SessionState.CLOSED:
                break
            self.keepalive(session)
        logger.debug("Keepalive thread exiting for %s", session.host)
