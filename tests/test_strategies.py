"""Tests for pibridge/strategies.py — SCP streaming, rsync driving, error mapping."""

from __future__ import annotations

import errno
import socket
import threading
from pathlib import Path
from unittest.mock import patch

import paramiko
import pytest

from conftest import LocalSession, LocalSFTP, make_file
from pibridge.errors import FailureReason, SessionError, TransferError
from pibridge.models import (
    ItemCompleted,
    ItemFailed,
    ItemProgress,
    ItemStarted,
    TransferDirection,
    TransferItem,
)
from pibridge.session import KeyFileAuth, PasswordAuth, RemoteHost
from pibridge.strategies import (
    StrategyOptions,
    build_rsync_command,
    classify_error,
    classify_rsync_exit,
    rsync_available,
    rsync_transfer,
    scp_transfer,
)
from pibridge.utils.path_helpers import TEMP_SUFFIX

SMALL_CHUNKS = StrategyOptions(chunk_size=100)


def _upload(src: Path, dest: Path) -> TransferItem:
    return TransferItem(str(src), str(dest), TransferDirection.UPLOAD, src.stat().st_size, src.stat().st_mtime)


def _download(src: Path, dest: Path) -> TransferItem:
    return TransferItem(str(src), str(dest), TransferDirection.DOWNLOAD, src.stat().st_size, src.stat().st_mtime)


def _terminal(events) -> dict[int, object]:
    return {e.index: e for e in events if isinstance(e, (ItemCompleted, ItemFailed))}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class _DeniedSFTP(LocalSFTP):
    """Remote side refuses every write (root ignores chmod, so fake it)."""

    def open(self, path: str, mode: str = "rb"):
        if "w" in mode:
            raise PermissionError(errno.EACCES, "Permission denied", path)
        return super().open(path, mode)


class _DroppingSFTP(LocalSFTP):
    def open(self, path: str, mode: str = "rb"):
        raise EOFError("server closed the channel")


# ---------------------------------------------------------------------------
# SCP
# ---------------------------------------------------------------------------


class TestScpUpload:
    def test_single_file(self, session: LocalSession, local_root: Path, remote_root: Path) -> None:
        src = make_file(local_root / "photo.jpg", 450, mtime=1700000000.5)
        dest = remote_root / "pics" / "photo.jpg"
        events = list(scp_transfer(session, [_upload(src, dest)], threading.Event(), SMALL_CHUNKS))

        assert isinstance(events[0], ItemStarted)
        assert [e.bytes_done for e in events if isinstance(e, ItemProgress)] == [100, 200, 300, 400, 450]
        assert events[-1] == ItemCompleted(0, 450)
        assert dest.read_bytes() == src.read_bytes()
        assert int(dest.stat().st_mtime) == 1700000000
        assert not Path(str(dest) + TEMP_SUFFIX).exists()

    def test_overwrites_existing(self, session: LocalSession, local_root: Path, remote_root: Path) -> None:
        src = make_file(local_root / "a.txt", 10)
        dest = make_file(remote_root / "a.txt", 3)
        list(scp_transfer(session, [_upload(src, dest)], threading.Event()))
        assert dest.stat().st_size == 10

    def test_stall_timeout_applied(self, session: LocalSession, local_root: Path, remote_root: Path) -> None:
        src = make_file(local_root / "a", 1)
        list(scp_transfer(session, [_upload(src, remote_root / "a")], threading.Event(), StrategyOptions(stall_timeout=7)))
        session.sftp().channel.settimeout.assert_called_with(7)

    def test_permission_denied_not_transient(self, local_root: Path, remote_root: Path) -> None:
        session = LocalSession()
        session._sftp = _DeniedSFTP()
        items = [_upload(make_file(local_root / n, 5), remote_root / n) for n in ("a", "b")]
        terminal = _terminal(scp_transfer(session, items, threading.Event()))
        assert [terminal[i].reason for i in (0, 1)] == [FailureReason.PERMISSION_DENIED] * 2
        assert session.degraded == []

    def test_dropped_connection_degrades_session(self, local_root: Path, remote_root: Path) -> None:
        session = LocalSession()
        session._sftp = _DroppingSFTP()
        item = _upload(make_file(local_root / "a", 5), remote_root / "a")
        terminal = _terminal(scp_transfer(session, [item], threading.Event()))
        assert terminal[0].reason == FailureReason.CONNECTION_LOST
        assert len(session.degraded) == 1


class TestScpDownload:
    def test_creates_parents_and_preserves_mtime(
        self, session: LocalSession, local_root: Path, remote_root: Path
    ) -> None:
        src = make_file(remote_root / "log.txt", 300, mtime=1690000000)
        dest = local_root / "deep" / "er" / "log.txt"
        events = list(scp_transfer(session, [_download(src, dest)], threading.Event()))
        assert events[-1] == ItemCompleted(0, 300)
        assert dest.read_bytes() == src.read_bytes()
        assert int(dest.stat().st_mtime) == 1690000000

    def test_missing_source(self, session: LocalSession, local_root: Path, remote_root: Path) -> None:
        item = TransferItem(str(remote_root / "gone"), str(local_root / "gone"), TransferDirection.DOWNLOAD, 1)
        terminal = _terminal(scp_transfer(session, [item], threading.Event()))
        assert terminal[0].reason == FailureReason.PATH_NOT_FOUND


class TestScpCancel:
    def test_cancel_between_items(self, session: LocalSession, local_root: Path, remote_root: Path) -> None:
        """Items after the cancel point fail CANCELLED and are never started."""
        items = [_upload(make_file(local_root / f"f{i}", 50), remote_root / f"f{i}") for i in range(3)]
        cancel = threading.Event()
        events = []
        for event in scp_transfer(session, items, cancel):
            events.append(event)
            if isinstance(event, ItemCompleted) and event.index == 0:
                cancel.set()
        terminal = _terminal(events)
        assert isinstance(terminal[0], ItemCompleted)
        assert terminal[1].reason == terminal[2].reason == FailureReason.CANCELLED
        assert ItemStarted(1) not in events
        assert not (remote_root / "f1").exists()

    def test_cancel_mid_item_removes_temp(self, session: LocalSession, local_root: Path, remote_root: Path) -> None:
        item = _upload(make_file(local_root / "big", 1000), remote_root / "big")
        cancel = threading.Event()
        events = []
        for event in scp_transfer(session, [item], cancel, SMALL_CHUNKS):
            events.append(event)
            if isinstance(event, ItemProgress):
                cancel.set()
        assert events[-1].reason == FailureReason.CANCELLED
        assert list(remote_root.iterdir()) == []


# ---------------------------------------------------------------------------
# rsync
# ---------------------------------------------------------------------------


class TestRsyncTransfer:
    def test_copies_and_reports_progress(
        self, fake_rsync, session: LocalSession, local_root: Path, remote_root: Path
    ) -> None:
        src = make_file(local_root / "disk.img", 2048)
        events = list(rsync_transfer(session, [_upload(src, remote_root / "disk.img")], threading.Event()))
        assert ItemProgress(0, 2048) in events
        assert events[-1] == ItemCompleted(0, 2048)
        assert (remote_root / "disk.img").read_bytes() == src.read_bytes()

    def test_second_run_moves_nothing(
        self, fake_rsync, session: LocalSession, local_root: Path, remote_root: Path
    ) -> None:
        """Re-running against an already-synced destination spawns no process."""
        items = [_upload(make_file(local_root / f"f{i}", 100 * (i + 1)), remote_root / f"f{i}") for i in range(3)]
        list(rsync_transfer(session, items, threading.Event()))
        assert len(fake_rsync.calls) == 3

        fake_rsync.calls = []
        events = list(rsync_transfer(session, items, threading.Event()))
        assert fake_rsync.calls == []
        assert sorted(e.index for e in events if isinstance(e, ItemCompleted)) == [0, 1, 2]
        assert all(e.bytes_moved == 0 for e in events if isinstance(e, ItemCompleted))

    def test_nonzero_exit_classified(
        self, fake_rsync, session: LocalSession, local_root: Path, remote_root: Path
    ) -> None:
        fake_rsync.exit_code = 23
        fake_rsync.output = 'rsync: [receiver] mkstemp "/srv/.x" failed: Permission denied (13)\n'
        item = _upload(make_file(local_root / "x", 10), remote_root / "x")
        terminal = _terminal(rsync_transfer(session, [item], threading.Event()))
        assert terminal[0].reason == FailureReason.PERMISSION_DENIED

    def test_cancel_before_copy_phase(
        self, fake_rsync, session: LocalSession, local_root: Path, remote_root: Path
    ) -> None:
        cancel = threading.Event()
        cancel.set()
        items = [_upload(make_file(local_root / f"f{i}", 10), remote_root / f"f{i}") for i in range(2)]
        terminal = _terminal(rsync_transfer(session, items, cancel))
        assert {e.reason for e in terminal.values()} == {FailureReason.CANCELLED}
        assert fake_rsync.calls == []

    def test_cancel_mid_item_terminates_rsync(
        self, fake_rsync, session: LocalSession, local_root: Path, remote_root: Path
    ) -> None:
        """The running item and every later one end CANCELLED; the child is stopped."""
        fake_rsync.hang = True
        items = [_upload(make_file(local_root / f"f{i}", 10), remote_root / f"f{i}") for i in range(3)]
        cancel = threading.Event()
        events = []
        for event in rsync_transfer(session, items, cancel, StrategyOptions(cancel_grace=1)):
            events.append(event)
            if isinstance(event, ItemProgress):
                cancel.set()

        assert ItemProgress(0, 1024) in events
        terminal = {e.index: e for e in events if isinstance(e, (ItemCompleted, ItemFailed))}
        assert sorted(terminal) == [0, 1, 2]
        assert {e.reason for e in terminal.values()} == {FailureReason.CANCELLED}
        assert len(fake_rsync.calls) == 1
        assert len(fake_rsync.terminated) == 1

    def test_closing_generator_stops_rsync(
        self, fake_rsync, session: LocalSession, local_root: Path, remote_root: Path
    ) -> None:
        fake_rsync.hang = True
        item = _upload(make_file(local_root / "f", 10), remote_root / "f")
        events = rsync_transfer(session, [item], threading.Event(), StrategyOptions(cancel_grace=1))
        assert next(events) == ItemStarted(0)
        assert next(events) == ItemProgress(0, 1024)
        events.close()
        assert len(fake_rsync.terminated) == 1


class TestBuildRsyncCommand:
    def test_key_auth(self) -> None:
        host = RemoteHost("raspberrypi.local", port=2222, auth=KeyFileAuth("/home/me/.ssh/id_ed25519"))
        item = TransferItem("/tmp/a b.txt", "/home/pi/a b.txt", TransferDirection.UPLOAD, 1)
        argv, env = build_rsync_command(host, item, StrategyOptions(stall_timeout=30))
        assert argv[0] == "rsync"
        assert "--protect-args" in argv and "--times" in argv and "--timeout=30" in argv
        assert argv[argv.index("-e") + 1] == "ssh -p 2222 -i /home/me/.ssh/id_ed25519 -o BatchMode=yes"
        assert argv[-2:] == ["/tmp/a b.txt", "pi@raspberrypi.local:/home/pi/a b.txt"]
        assert "SSHPASS" not in env

    def test_password_auth_uses_sshpass(self) -> None:
        host = RemoteHost("10.0.0.2", auth=PasswordAuth("hunter2"))
        item = TransferItem("/home/pi/x", "/tmp/x", TransferDirection.DOWNLOAD, 1)
        argv, env = build_rsync_command(host, item, StrategyOptions(), password="hunter2")
        assert argv[:3] == ["sshpass", "-e", "rsync"]
        assert env["SSHPASS"] == "hunter2"
        assert argv[-2:] == ["pi@10.0.0.2:/home/pi/x", "/tmp/x"]

    def test_ipv6_bracketed(self) -> None:
        host = RemoteHost("fe80::1", auth=KeyFileAuth("/k"))
        item = TransferItem("/a", "/b", TransferDirection.UPLOAD, 1)
        argv, _ = build_rsync_command(host, item, StrategyOptions())
        assert argv[-1] == "pi@[fe80::1]:/b"

    def test_password_host_without_password_keeps_agent_keys(self) -> None:
        host = RemoteHost("10.0.0.2", auth=PasswordAuth())
        item = TransferItem("/a", "/b", TransferDirection.UPLOAD, 1)
        argv, env = build_rsync_command(host, item, StrategyOptions())
        assert argv[0] == "rsync"
        assert argv[argv.index("-e") + 1] == "ssh -p 22 -o BatchMode=yes"
        assert "SSHPASS" not in env


class TestRsyncAvailable:
    def test_all_present(self, session: LocalSession) -> None:
        with patch("pibridge.strategies.shutil.which", return_value="/usr/bin/rsync"):
            assert rsync_available(session)

    def test_no_local_binary(self, session: LocalSession) -> None:
        with patch("pibridge.strategies.shutil.which", return_value=None):
            assert not rsync_available(session)

    def test_no_remote_binary(self) -> None:
        session = LocalSession(remote_rsync=False)
        with patch("pibridge.strategies.shutil.which", return_value="/usr/bin/rsync"):
            assert not rsync_available(session)

    def test_password_auth_needs_sshpass(self) -> None:
        session = LocalSession(RemoteHost("pi", auth=PasswordAuth("pw")))
        session.password = "pw"
        with patch("pibridge.strategies.shutil.which", side_effect=lambda name: None if name == "sshpass" else "/x"):
            assert not rsync_available(session)

    def test_password_auth_with_sshpass(self) -> None:
        session = LocalSession(RemoteHost("pi", auth=PasswordAuth("pw")))
        session.password = "pw"
        with patch("pibridge.strategies.shutil.which", return_value="/usr/bin/sshpass"):
            assert rsync_available(session)

    def test_agent_authenticated_password_host(self) -> None:
        """No resolved password means sshpass has nothing to send."""
        session = LocalSession(RemoteHost("pi", auth=PasswordAuth()))
        with patch("pibridge.strategies.shutil.which", return_value="/usr/bin/sshpass"):
            assert not rsync_available(session)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassifyError:
    @pytest.mark.parametrize(
        ("exc", "reason"),
        [
            (PermissionError(errno.EACCES, "denied"), FailureReason.PERMISSION_DENIED),
            (OSError(errno.ENOSPC, "full"), FailureReason.DISK_FULL),
            (FileNotFoundError(errno.ENOENT, "gone"), FailureReason.PATH_NOT_FOUND),
            (socket.timeout("stalled"), FailureReason.TIMEOUT),
            (EOFError(), FailureReason.CONNECTION_LOST),
            (paramiko.SSHException("bad packet"), FailureReason.CONNECTION_LOST),
            (SessionError("lost"), FailureReason.CONNECTION_LOST),
            (TransferError("x", FailureReason.DISK_FULL), FailureReason.DISK_FULL),
            (ValueError("odd"), FailureReason.IO_ERROR),
        ],
    )
    def test_mapping(self, exc: BaseException, reason: FailureReason) -> None:
        assert classify_error(exc) == reason

    def test_transient_split(self) -> None:
        transient = {r for r in FailureReason if r.transient}
        assert transient == {FailureReason.CONNECTION_LOST, FailureReason.TIMEOUT}


class TestClassifyRsyncExit:
    def test_messages_win_over_codes(self) -> None:
        assert classify_rsync_exit(23, "open failed: No space left on device (28)") == FailureReason.DISK_FULL

    def test_timeout_codes(self) -> None:
        assert classify_rsync_exit(30, "") == FailureReason.TIMEOUT

    def test_connection_codes(self) -> None:
        assert classify_rsync_exit(255, "ssh: connect to host pi port 22: Connection refused") == FailureReason.CONNECTION_LOST

    def test_unknown_code(self) -> None:
        assert classify_rsync_exit(1, "syntax or usage error") == FailureReason.IO_ERROR
