"""Transfer strategies: whole-file copy (SCP) and delta sync (rsync).

Each strategy is a generator function with the same signature::

    run(session, items, cancel_event, options) -> Iterator[ProgressEvent]

The generator is lazy, finite and single-use.  It reads the items it is
given but never mutates them; the coordinator owns item state and applies
the events.  Every item yields ``ItemStarted`` or nothing before exactly one
terminal event (``ItemCompleted`` / ``ItemFailed``).
"""

from __future__ import annotations

import errno
import logging
import os
import re
import shlex
import shutil
import socket
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Sequence

import paramiko

from pibridge.errors import FailureReason, SessionError, TransferError
from pibridge.models import (
    ItemCompleted,
    ItemFailed,
    ItemProgress,
    ItemStarted,
    ProgressEvent,
    StrategyKind,
    TransferDirection,
    TransferItem,
)
from pibridge.session import KeyFileAuth, RemoteHost
from pibridge.utils.path_helpers import remote_parent, temp_name

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024  # 256 KB per read/write call

_PROGRESS_RE = re.compile(r"^\s*([\d,]+)\s+\d+%")


@dataclass(frozen=True)
class StrategyOptions:
    """Tuning knobs shared by both strategies."""

    chunk_size: int = CHUNK_SIZE
    stall_timeout: float = 60.0  # seconds without progress before giving up
    rsync_options: tuple[str, ...] = ()
    cancel_grace: float = 5.0  # seconds an rsync child gets to exit on cancel


class _Cancelled(Exception):
    """Internal signal: the cancel event fired mid-item."""


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def classify_error(exc: BaseException) -> FailureReason:
    """Map an exception raised while moving one file to a FailureReason."""
    if isinstance(exc, TransferError):
        return exc.reason
    if isinstance(exc, _Cancelled):
        return FailureReason.CANCELLED
    if isinstance(exc, SessionError):
        return FailureReason.CONNECTION_LOST
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return FailureReason.TIMEOUT
    if isinstance(
        exc,
        (EOFError, ConnectionResetError, ConnectionAbortedError, BrokenPipeError, paramiko.SSHException),
    ):
        return FailureReason.CONNECTION_LOST
    if isinstance(exc, OSError):
        if exc.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
            return FailureReason.PERMISSION_DENIED
        if exc.errno in (errno.ENOSPC, errno.EDQUOT):
            return FailureReason.DISK_FULL
        if exc.errno in (errno.ENOENT, errno.ENOTDIR):
            return FailureReason.PATH_NOT_FOUND
    return FailureReason.IO_ERROR


def classify_rsync_exit(code: int, output: str) -> FailureReason:
    """Map an rsync exit status (plus its messages) to a FailureReason."""
    lowered = output.lower()
    if "permission denied" in lowered:
        return FailureReason.PERMISSION_DENIED
    if "no space left" in lowered or "disk quota exceeded" in lowered:
        return FailureReason.DISK_FULL
    if "no such file or directory" in lowered:
        return FailureReason.PATH_NOT_FOUND
    if code == 20:
        return FailureReason.CANCELLED
    if code in (30, 35):
        return FailureReason.TIMEOUT
    if code in (10, 12, 255):
        return FailureReason.CONNECTION_LOST
    return FailureReason.IO_ERROR


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _cancel_from(indices: Sequence[int]) -> Iterator[ProgressEvent]:
    for index in indices:
        yield ItemFailed(index, FailureReason.CANCELLED, "cancelled before start")


def _stream(src, dst, index: int, cancel_event: threading.Event, chunk_size: int) -> Iterator[ProgressEvent]:
    """Copy *src* to *dst* in chunks, yielding progress; returns bytes moved."""
    moved = 0
    while True:
        if cancel_event.is_set():
            raise _Cancelled()
        chunk = src.read(chunk_size)
        if not chunk:
            break
        dst.write(chunk)
        moved += len(chunk)
        yield ItemProgress(index, moved)
    return moved


def _sftp_makedirs(sftp, remote_dir: str) -> None:
    """Create *remote_dir* and any missing ancestor directories."""
    parts = [p for p in remote_dir.split("/") if p]
    cumulative = "" if remote_dir.startswith("/") else "."
    for part in parts:
        cumulative = f"{cumulative}/{part}"
        try:
            sftp.stat(cumulative)
        except FileNotFoundError:
            sftp.mkdir(cumulative)


def _sftp_replace(sftp, tmp_remote: str, dest: str) -> None:
    """Atomically move *tmp_remote* over *dest*."""
    try:
        sftp.posix_rename(tmp_remote, dest)
    except (OSError, paramiko.SSHException):
        # Servers without the posix-rename extension refuse to overwrite.
        try:
            sftp.remove(dest)
        except FileNotFoundError:
            pass
        sftp.rename(tmp_remote, dest)


def _remove_remote_quietly(sftp, path: str) -> None:
    try:
        sftp.remove(path)
    except (OSError, paramiko.SSHException) as exc:
        logger.debug("Could not remove remote temp %s: %s", path, exc)


def _remove_local_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.debug("Could not remove local temp %s: %s", path, exc)


def _apply_stall_timeout(sftp, seconds: float) -> None:
    """A read/write that blocks longer than *seconds* raises socket.timeout."""
    if seconds > 0:
        sftp.get_channel().settimeout(seconds)


# ---------------------------------------------------------------------------
# SCP strategy
# ---------------------------------------------------------------------------


def _scp_upload(session, index: int, item: TransferItem, cancel_event, options: StrategyOptions):
    sftp = session.sftp()
    _apply_stall_timeout(sftp, options.stall_timeout)
    dest = item.destination_path
    _sftp_makedirs(sftp, remote_parent(dest))

    tmp_remote = temp_name(dest)
    mtime = os.stat(item.source_path).st_mtime
    finished = False
    try:
        with open(item.source_path, "rb") as local_fh:
            with sftp.open(tmp_remote, "wb") as remote_fh:
                # Pipelined writes keep many requests in flight; close()
                # still waits for every ACK before the rename below.
                remote_fh.set_pipelined(True)
                moved = yield from _stream(local_fh, remote_fh, index, cancel_event, options.chunk_size)
        sftp.utime(tmp_remote, (mtime, mtime))
        _sftp_replace(sftp, tmp_remote, dest)
        finished = True
    finally:
        if not finished:
            _remove_remote_quietly(sftp, tmp_remote)
    logger.info("Upload complete: %s → %s", item.source_path, dest)
    return moved


def _scp_download(session, index: int, item: TransferItem, cancel_event, options: StrategyOptions):
    sftp = session.sftp()
    _apply_stall_timeout(sftp, options.stall_timeout)
    dest = Path(item.destination_path)
    tmp_local = Path(temp_name(str(dest)))

    attrs = sftp.stat(item.source_path)
    finished = False
    try:
        with sftp.open(item.source_path, "rb") as remote_fh:
            # Read-ahead pipelines SFTP read requests instead of one round
            # trip per chunk.
            if attrs.st_size:
                remote_fh.prefetch(attrs.st_size)
            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_local, "wb") as local_fh:
                moved = yield from _stream(remote_fh, local_fh, index, cancel_event, options.chunk_size)
        if attrs.st_mtime is not None:
            os.utime(tmp_local, (attrs.st_mtime, attrs.st_mtime))
        os.replace(tmp_local, dest)
        finished = True
    finally:
        if not finished:
            _remove_local_quietly(tmp_local)
    logger.info("Download complete: %s → %s", item.source_path, dest)
    return moved


def scp_transfer(
    session,
    items: Sequence[TransferItem],
    cancel_event: threading.Event,
    options: StrategyOptions = StrategyOptions(),
) -> Iterator[ProgressEvent]:
    """Copy each item as a whole file, strictly in submission order."""
    for index, item in enumerate(items):
        if cancel_event.is_set():
            yield from _cancel_from(range(index, len(items)))
            return
        yield ItemStarted(index)
        copy = _scp_upload if item.direction == TransferDirection.UPLOAD else _scp_download
        try:
            moved = yield from copy(session, index, item, cancel_event, options)
        except _Cancelled:
            logger.info("Cancelled mid-transfer: %s", item.source_path)
            yield ItemFailed(index, FailureReason.CANCELLED, "cancelled")
            yield from _cancel_from(range(index + 1, len(items)))
            return
        except Exception as exc:
            reason = classify_error(exc)
            logger.error("Transfer failed for %r: %s (%s)", item.source_path, exc, reason.name)
            if reason.transient:
                session.mark_degraded(str(exc))
            yield ItemFailed(index, reason, str(exc))
            continue
        yield ItemCompleted(index, moved)


# ---------------------------------------------------------------------------
# rsync strategy
# ---------------------------------------------------------------------------


def _in_sync(session, item: TransferItem) -> bool:
    """Quick check: same size and same whole-second mtime on both sides."""
    sftp = session.sftp()
    try:
        if item.direction == TransferDirection.UPLOAD:
            local = os.stat(item.source_path)
            remote = sftp.stat(item.destination_path)
        else:
            remote = sftp.stat(item.source_path)
            local = os.stat(item.destination_path)
    except FileNotFoundError:
        return False
    if remote.st_size is None or remote.st_mtime is None:
        return False
    return remote.st_size == local.st_size and int(remote.st_mtime) == int(local.st_mtime)


def _remote_spec(host: RemoteHost, path: str) -> str:
    hostname = f"[{host.host}]" if ":" in host.host else host.host
    return f"{host.username}@{hostname}:{path}"


def build_rsync_command(
    host: RemoteHost,
    item: TransferItem,
    options: StrategyOptions,
    password: str | None = None,
) -> tuple[list[str], dict[str, str]]:
    """Return ``(argv, env)`` for copying *item* with the local rsync binary."""
    ssh = ["ssh", "-p", str(host.port)]
    env = dict(os.environ)
    prefix: list[str] = []
    if isinstance(host.auth, KeyFileAuth):
        ssh += ["-i", host.auth.path, "-o", "BatchMode=yes"]
    elif password is not None:
        ssh += ["-o", "PubkeyAuthentication=no"]
        prefix = ["sshpass", "-e"]
        env["SSHPASS"] = password
    else:
        # Agent keys only; never fall back to an interactive prompt.
        ssh += ["-o", "BatchMode=yes"]

    argv = [
        *prefix,
        "rsync",
        "--times",
        "--protect-args",
        "--progress",
        f"--timeout={max(1, int(options.stall_timeout))}",
        *options.rsync_options,
        "-e",
        " ".join(shlex.quote(part) for part in ssh),
    ]
    if item.direction == TransferDirection.UPLOAD:
        argv += [item.source_path, _remote_spec(host, item.destination_path)]
    else:
        argv += [_remote_spec(host, item.source_path), item.destination_path]
    return argv, env


def _stop_process(proc: subprocess.Popen, grace: float) -> None:
    """Terminate *proc*, killing it if it outlives *grace* seconds."""
    proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def _terminate_on_cancel(proc: subprocess.Popen, cancel_event: threading.Event, grace: float) -> None:
    """Watcher thread body: stop *proc* once the cancel event fires."""
    while proc.poll() is None:
        if cancel_event.wait(0.2):
            _stop_process(proc, grace)
            return


def _rsync_one(session, index: int, item: TransferItem, cancel_event, options: StrategyOptions):
    if item.direction == TransferDirection.UPLOAD:
        _sftp_makedirs(session.sftp(), remote_parent(item.destination_path))
    else:
        Path(item.destination_path).parent.mkdir(parents=True, exist_ok=True)

    argv, env = build_rsync_command(session.host, item, options, session.password)
    logger.debug("Running rsync for %s", item.source_path)
    proc = subprocess.Popen(
        argv,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        env=env,
    )
    watcher = threading.Thread(
        target=_terminate_on_cancel,
        args=(proc, cancel_event, options.cancel_grace),
        name=f"rsync-cancel-{index}",
        daemon=True,
    )
    watcher.start()

    moved = 0
    messages: list[str] = []
    try:
        # Universal newlines turn rsync's \r progress updates into lines.
        for line in proc.stdout:
            match = _PROGRESS_RE.match(line)
            if match:
                moved = int(match.group(1).replace(",", ""))
                yield ItemProgress(index, moved)
            elif line.strip():
                messages.append(line.strip())
        code = proc.wait()
    finally:
        # Child still running means the consumer abandoned this generator.
        if proc.poll() is None:
            logger.warning("Stopping abandoned rsync for %s", item.source_path)
            _stop_process(proc, options.cancel_grace)
        proc.stdout.close()
        watcher.join(timeout=1)

    if cancel_event.is_set():
        raise _Cancelled()
    if code != 0:
        output = "\n".join(messages)
        reason = classify_rsync_exit(code, output)
        raise TransferError(f"rsync exited {code}: {messages[-1] if messages else ''}", reason)
    logger.info("rsync complete: %s → %s (%d bytes)", item.source_path, item.destination_path, moved)
    return moved


def rsync_transfer(
    session,
    items: Sequence[TransferItem],
    cancel_event: threading.Event,
    options: StrategyOptions = StrategyOptions(),
) -> Iterator[ProgressEvent]:
    """Bring each destination in line with its source, moving only what differs.

    Items already in sync are reported first (zero bytes moved); the rest are
    copied afterwards in submission order, so completion events may arrive
    out of submission order.
    """
    changed: list[int] = []
    for index, item in enumerate(items):
        if cancel_event.is_set():
            yield from _cancel_from([*changed, *range(index, len(items))])
            return
        try:
            unchanged = _in_sync(session, item)
        except Exception as exc:
            logger.debug("Quick check failed for %s: %s", item.source_path, exc)
            unchanged = False
        if unchanged:
            logger.debug("Already in sync: %s", item.source_path)
            yield ItemStarted(index)
            yield ItemCompleted(index, 0)
        else:
            changed.append(index)

    for position, index in enumerate(changed):
        item = items[index]
        if cancel_event.is_set():
            yield from _cancel_from(changed[position:])
            return
        yield ItemStarted(index)
        try:
            moved = yield from _rsync_one(session, index, item, cancel_event, options)
        except _Cancelled:
            logger.info("Cancelled mid-transfer: %s", item.source_path)
            yield ItemFailed(index, FailureReason.CANCELLED, "cancelled")
            yield from _cancel_from(changed[position + 1:])
            return
        except Exception as exc:
            reason = classify_error(exc)
            logger.error("rsync failed for %r: %s (%s)", item.source_path, exc, reason.name)
            if reason.transient:
                session.mark_degraded(str(exc))
            yield ItemFailed(index, reason, str(exc))
            continue
        yield ItemCompleted(index, moved)


def rsync_available(session) -> bool:
    """True if both ends can run rsync for *session*'s host."""
    if shutil.which("rsync") is None:
        logger.debug("Local rsync binary not found")
        return False
    if not isinstance(session.host.auth, KeyFileAuth):
        if session.password is None:
            logger.debug("No password to hand to sshpass for %s; rsync unavailable", session.host)
            return False
        if shutil.which("sshpass") is None:
            logger.debug("Password auth without sshpass — rsync unavailable")
            return False
    try:
        result = session.execute("command -v rsync")
    except SessionError as exc:
        logger.warning("Could not probe remote rsync on %s: %s", session.host, exc)
        return False
    return result.ok and bool(result.stdout.strip())


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

_STRATEGIES: dict[StrategyKind, Callable[..., Iterator[ProgressEvent]]] = {
    StrategyKind.SCP: scp_transfer,
    StrategyKind.RSYNC: rsync_transfer,
}


def run_strategy(
    kind: StrategyKind,
    session,
    items: Sequence[TransferItem],
    cancel_event: threading.Event,
    options: StrategyOptions = StrategyOptions(),
) -> Iterator[ProgressEvent]:
    """Start the strategy tagged *kind*; returns its event generator."""
    return _STRATEGIES[kind](session, items, cancel_event, options)
