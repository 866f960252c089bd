"""Tests for pibridge/utils/path_helpers.py."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from pibridge.utils.path_helpers import (
    human_readable_size,
    is_remote_descendant,
    normalize_local_path,
    normalize_remote_path,
    remote_parent,
    shell_quote,
    temp_name,
)


class TestNormalizeRemotePath:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("/home/pi/", "/home/pi"),
            ("/home//pi/./docs", "/home/pi/docs"),
            ("\\home\\pi\\docs", "/home/pi/docs"),
            ("  /srv  ", "/srv"),
            ("/", "/"),
            ("//srv", "/srv"),
            ("docs/notes", "docs/notes"),
        ],
    )
    def test_cleanup(self, raw: str, expected: str) -> None:
        assert normalize_remote_path(raw) == expected

    @pytest.mark.parametrize("bad", ["", "/home/../etc", "/tmp/\x00evil", "..\\secret"])
    def test_rejected(self, bad: str) -> None:
        with pytest.raises(ValueError):
            normalize_remote_path(bad)


class TestLocalPaths:
    def test_relative_made_absolute(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        assert normalize_local_path("a/b") == Path.cwd() / "a" / "b"

    def test_symlink_kept(self, tmp_path: Path) -> None:
        (tmp_path / "real").mkdir()
        os.symlink(tmp_path / "real", tmp_path / "link")
        assert normalize_local_path(tmp_path / "link").name == "link"


class TestRemoteHelpers:
    def test_parent(self) -> None:
        assert remote_parent("/home/pi/a.txt") == "/home/pi"
        assert remote_parent("/a.txt") == "/"

    def test_descendant(self) -> None:
        assert is_remote_descendant("/home/pi/docs", "/home/pi")
        assert is_remote_descendant("/home/pi", "/home/pi")
        assert not is_remote_descendant("/home/pix", "/home/pi")
        assert is_remote_descendant("/anything", "/")

    def test_shell_quote(self) -> None:
        assert shell_quote("it's here") == "'it'\\''s here'"

    def test_temp_name(self) -> None:
        assert temp_name("/srv/a.bin") == "/srv/a.bin.pibridge-part"


class TestHumanReadableSize:
    @pytest.mark.parametrize(
        ("size", "expected"),
        [(0, "0 B"), (512, "512 B"), (1536, "1.5 KB"), (5 * 1024**3, "5.0 GB"), (-1, "0 B")],
    )
    def test_units(self, size: int, expected: str) -> None:
        assert human_readable_size(size) == expected
