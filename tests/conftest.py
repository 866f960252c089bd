"""Shared fixtures: a Session double whose "remote" side is a local temp directory.

``LocalSession.execute`` understands the handful of shell commands PiBridge
sends (``ls``, ``readlink -e``, ``command -v``) and answers them from the
local filesystem; ``LocalSession.sftp()`` returns an SFTP-shaped shim over
``os``.  This lets the listing parser, the strategies and the coordinator
run end to end without an SSH server.
"""

from __future__ import annotations

import io
import os
import shlex
import shutil
import stat
import subprocess
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from pibridge.remote_fs import RemoteFilesystemView
from pibridge.session import CommandResult, KeyFileAuth, RemoteHost


# ---------------------------------------------------------------------------
# SFTP shim
# ---------------------------------------------------------------------------


class _LocalRemoteFile:
    """File handle with the paramiko.SFTPFile extras the strategies call."""

    def __init__(self, fh) -> None:
        self._fh = fh

    def set_pipelined(self, pipelined: bool = True) -> None:
        pass

    def prefetch(self, file_size: int | None = None) -> None:
        pass

    def read(self, size: int = -1) -> bytes:
        return self._fh.read(size)

    def write(self, data: bytes) -> None:
        self._fh.write(data)

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "_LocalRemoteFile":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class LocalSFTP:
    """Maps the SFTPClient calls PiBridge makes onto the local filesystem."""

    def __init__(self) -> None:
        self.channel = MagicMock()

    def stat(self, path: str) -> os.stat_result:
        return os.stat(path)

    def open(self, path: str, mode: str = "rb") -> _LocalRemoteFile:
        return _LocalRemoteFile(open(path, mode))

    def mkdir(self, path: str) -> None:
        os.mkdir(path)

    def remove(self, path: str) -> None:
        os.remove(path)

    def rename(self, old: str, new: str) -> None:
        os.rename(old, new)

    def posix_rename(self, old: str, new: str) -> None:
        os.replace(old, new)

    def utime(self, path: str, times: tuple[float, float]) -> None:
        os.utime(path, times)

    def get_channel(self) -> MagicMock:
        return self.channel


# ---------------------------------------------------------------------------
# Session double
# ---------------------------------------------------------------------------


def _ls_line(path: str, name: str, follow: bool) -> str:
    st = os.stat(path) if follow else os.lstat(path)
    line = f"{stat.filemode(st.st_mode)} 1 pi pi {st.st_size} {int(st.st_mtime)} {name}"
    if stat.S_ISLNK(st.st_mode):
        line += f" -> {os.readlink(path)}"
    return line


class LocalSession:
    """Stands in for :class:`pibridge.session.Session`."""

    def __init__(self, host: RemoteHost | None = None, remote_rsync: bool = True) -> None:
        self.host = host or RemoteHost("localhost", auth=KeyFileAuth("/tmp/id_test"))
        self.password: str | None = None
        self.remote_rsync = remote_rsync
        self.commands: list[str] = []
        self.degraded: list[str | None] = []
        self._sftp = LocalSFTP()

    def sftp(self) -> LocalSFTP:
        return self._sftp

    def mark_degraded(self, message: str | None = None) -> None:
        self.degraded.append(message)

    def execute(self, command: str, timeout: float | None = None) -> CommandResult:
        self.commands.append(command)
        argv = shlex.split(command)
        if argv[:2] == ["command", "-v"]:
            if self.remote_rsync and argv[2] == "rsync":
                return CommandResult("/usr/bin/rsync\n", "", 0)
            return CommandResult("", "", 1)
        if argv[0] == "readlink":
            try:
                return CommandResult(os.path.realpath(argv[-1], strict=True) + "\n", "", 0)
            except OSError:
                return CommandResult("", "", 1)
        if argv[:2] == ["LC_ALL=C", "ls"]:
            return self._ls(argv[-3], argv[-1])
        return CommandResult("", f"sh: {argv[0]}: not found\n", 127)

    def _ls(self, flags: str, path: str) -> CommandResult:
        try:
            if flags == "-la":
                if not stat.S_ISDIR(os.stat(path).st_mode):
                    raise NotADirectoryError(20, "Not a directory")
                names = [".", ".."] + os.listdir(path)
                lines = ["total 8"] + [
                    _ls_line(os.path.join(path, n), n, follow=n in (".", "..")) for n in names
                ]
            else:
                lines = [_ls_line(path, path, follow=flags == "-ladL")]
        except OSError as exc:
            return CommandResult("", f"ls: cannot access '{path}': {exc.strerror}\n", 2)
        return CommandResult("\n".join(lines) + "\n", "", 0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_file(path: Path, size: int, mtime: float | None = None) -> Path:
    """Create *path* (and parents) holding *size* deterministic bytes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(bytes(i % 251 for i in range(size)))
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture()
def session() -> LocalSession:
    """Return a LocalSession for a key-auth host."""
    return LocalSession()


@pytest.fixture()
def view() -> RemoteFilesystemView:
    """Return an empty RemoteFilesystemView."""
    return RemoteFilesystemView()


@pytest.fixture()
def remote_root(tmp_path: Path) -> Path:
    """Directory playing the role of the remote host's filesystem."""
    root = tmp_path / "remote"
    root.mkdir()
    return root


@pytest.fixture()
def local_root(tmp_path: Path) -> Path:
    """Directory playing the role of the workstation's filesystem."""
    root = tmp_path / "local"
    root.mkdir()
    return root


# ---------------------------------------------------------------------------
# rsync process double
# ---------------------------------------------------------------------------


class FakeRsync:
    """Popen replacement that copies the file like ``rsync --times`` would.

    With ``hang`` set the process prints one progress line and then runs
    until :meth:`terminate` or :meth:`kill` is called.
    """

    calls: list[list[str]] = []
    terminated: list["FakeRsync"] = []
    exit_code = 0
    output = ""
    hang = False

    def __init__(self, argv: list[str], **kwargs) -> None:
        FakeRsync.calls.append(argv)
        self._stopped = threading.Event()
        if self.hang:
            self.stdout = self._hanging_output()
            self.returncode = None
            return
        src, dst = (a.removeprefix("pi@localhost:") for a in argv[-2:])
        if self.exit_code == 0:
            shutil.copy2(src, dst)
            size = os.path.getsize(dst)
            text = f"{os.path.basename(src)}\n{size:>15,} 100%    1.00MB/s    0:00:00 (xfr#1, to-chk=0/1)\n"
        else:
            text = self.output
        self.stdout = io.StringIO(text)
        self.returncode = self.exit_code

    def _hanging_output(self):
        yield "          1,024  10%    1.00MB/s    0:00:09\n"
        self._stopped.wait(timeout=10)

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None and not self._stopped.wait(timeout=timeout):
            raise subprocess.TimeoutExpired("rsync", timeout)
        return self.returncode

    def terminate(self) -> None:
        if self.returncode is None:
            FakeRsync.terminated.append(self)
            self.returncode = -15
            self._stopped.set()

    def kill(self) -> None:
        self.terminate()


@pytest.fixture()
def fake_rsync():
    """Patch subprocess.Popen inside strategies with FakeRsync."""
    FakeRsync.calls = []
    FakeRsync.terminated = []
    FakeRsync.exit_code = 0
    FakeRsync.output = ""
    FakeRsync.hang = False
    with patch("pibridge.strategies.subprocess.Popen", FakeRsync):
        yield FakeRsync
