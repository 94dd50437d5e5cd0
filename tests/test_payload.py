"""Tests for lxe.payload: deterministic archives and safe extraction."""

from __future__ import annotations

import io
import os
import stat
import tarfile

import pytest

from lxe.errors import DecodeError, DecodeReason
from lxe.payload import archive_tree, scan_tree, unpack

from conftest import make_tree


def _archive(root) -> bytes:
    out = io.BytesIO()
    archive_tree(root, out)
    return out.getvalue()


def _tar_with(*members: tuple[tarfile.TarInfo, bytes | None]) -> bytes:
    out = io.BytesIO()
    with tarfile.open(fileobj=out, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for info, data in members:
            tar.addfile(info, io.BytesIO(data) if data is not None else None)
    return out.getvalue()


def _file(name: str, data: bytes = b"x") -> tuple[tarfile.TarInfo, bytes]:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    return info, data


class TestScanTree:

    def test_lexicographic_order(self, app_tree):
        paths = [e.path for e in scan_tree(app_tree)]
        assert paths == sorted(paths)
        assert paths == ["bin", "bin/demo", "bin/run", "lib", "lib/data.txt", "share", "share/icon.png"]

    def test_kinds_and_modes(self, app_tree):
        entries = {e.path: e for e in scan_tree(app_tree)}
        assert entries["bin"].kind == "dir"
        assert entries["bin/demo"].kind == "file"
        assert entries["bin/demo"].mode == 0o755
        assert entries["bin/run"].kind == "symlink"
        assert entries["bin/run"].linkname == "demo"

    def test_fifo_rejected(self, app_tree):
        os.mkfifo(app_tree / "pipe")
        with pytest.raises(ValueError, match="Unsupported"):
            scan_tree(app_tree)


class TestArchive:

    def test_reproducible_across_mtimes(self, app_tree):
        first = _archive(app_tree)
        os.utime(app_tree / "lib" / "data.txt", (1, 1))
        os.utime(app_tree / "bin", (2, 2))
        assert _archive(app_tree) == first

    def test_identical_trees_identical_bytes(self, tmp_path):
        a = make_tree(tmp_path / "a")
        b = make_tree(tmp_path / "b")
        assert _archive(a) == _archive(b)

    def test_content_changes_bytes(self, tmp_path):
        a = make_tree(tmp_path / "a", version="1.0.0")
        b = make_tree(tmp_path / "b", version="2.0.0")
        assert _archive(a) != _archive(b)

    def test_owner_and_time_zeroed(self, app_tree):
        with tarfile.open(fileobj=io.BytesIO(_archive(app_tree))) as tar:
            for member in tar.getmembers():
                assert member.mtime == 0
                assert member.uid == 0 and member.gid == 0
                assert member.uname == "" and member.gname == ""

    def test_stats(self, app_tree):
        out = io.BytesIO()
        stats = archive_tree(app_tree, out)
        assert stats.entries == 7
        assert stats.files == 3
        assert stats.archive_bytes == len(out.getvalue())
        assert stats.archive_bytes % 512 == 0


class TestUnpack:

    def test_roundtrip(self, app_tree, tmp_path):
        dest = tmp_path / "out"
        dest.mkdir()
        files = unpack(io.BytesIO(_archive(app_tree)), dest)
        assert files == ["bin/demo", "bin/run", "lib/data.txt", "share/icon.png"]
        for rel in ("bin/demo", "lib/data.txt", "share/icon.png"):
            assert (dest / rel).read_bytes() == (app_tree / rel).read_bytes()
            assert stat.S_IMODE(os.stat(dest / rel).st_mode) == stat.S_IMODE(os.stat(app_tree / rel).st_mode)
        assert os.readlink(dest / "bin" / "run") == "demo"

    def test_progress_callback(self, app_tree, tmp_path):
        dest = tmp_path / "out"
        dest.mkdir()
        seen = []
        unpack(io.BytesIO(_archive(app_tree)), dest, on_entry=lambda name, n: seen.append((name, n)))
        assert [name for name, _ in seen][:2] == ["bin", "bin/demo"]
        assert sum(n for _, n in seen) == sum(
            (app_tree / rel).stat().st_size for rel in ("bin/demo", "lib/data.txt", "share/icon.png")
        )

    def test_read_only_directory_populated(self, tmp_path):
        src = tmp_path / "src"
        (src / "ro").mkdir(parents=True)
        (src / "ro" / "f").write_text("content")
        (src / "ro").chmod(0o555)
        try:
            data = _archive(src)
        finally:
            (src / "ro").chmod(0o755)
        dest = tmp_path / "out"
        dest.mkdir()
        unpack(io.BytesIO(data), dest)
        assert (dest / "ro" / "f").read_text() == "content"

    @pytest.mark.parametrize("name", ["../evil", "/etc/evil", "a/../../evil"])
    def test_path_escape_rejected(self, tmp_path, name):
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(DecodeError) as exc:
            unpack(io.BytesIO(_tar_with(_file(name))), dest)
        assert exc.value.reason is DecodeReason.UNSAFE_ENTRY
        assert not (tmp_path / "evil").exists()

    @pytest.mark.parametrize("target", ["/etc/passwd", "../../outside", "../.."])
    def test_symlink_escape_rejected(self, tmp_path, target):
        info = tarfile.TarInfo("link")
        info.type = tarfile.SYMTYPE
        info.linkname = target
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(DecodeError) as exc:
            unpack(io.BytesIO(_tar_with((info, None))), dest)
        assert exc.value.reason is DecodeReason.UNSAFE_ENTRY

    def test_symlink_chain_cannot_escape(self, tmp_path):
        d = tarfile.TarInfo("d")
        d.type = tarfile.DIRTYPE
        d.mode = 0o755
        loop = tarfile.TarInfo("d/e")
        loop.type = tarfile.SYMTYPE
        loop.linkname = "."
        up = tarfile.TarInfo("d/e/l")
        up.type = tarfile.SYMTYPE
        up.linkname = "../.."
        data = _tar_with((d, None), (loop, None), (up, None), _file("d/e/l/evil.txt", b"pwned"))

        dest = tmp_path / "stage" / "inner"
        dest.mkdir(parents=True)
        with pytest.raises(DecodeError) as exc:
            unpack(io.BytesIO(data), dest)
        assert exc.value.reason is DecodeReason.UNSAFE_ENTRY
        assert not (tmp_path / "stage" / "evil.txt").exists()
        assert not (tmp_path / "evil.txt").exists()

    def test_entry_below_symlinked_dir_rejected(self, tmp_path):
        sub = tarfile.TarInfo("real")
        sub.type = tarfile.DIRTYPE
        alias = tarfile.TarInfo("alias")
        alias.type = tarfile.SYMTYPE
        alias.linkname = "real"
        data = _tar_with((sub, None), (alias, None), _file("alias/f", b"x"))
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(DecodeError) as exc:
            unpack(io.BytesIO(data), dest)
        assert exc.value.reason is DecodeReason.UNSAFE_ENTRY

    def test_device_rejected(self, tmp_path):
        info = tarfile.TarInfo("dev")
        info.type = tarfile.CHRTYPE
        info.devmajor, info.devminor = 1, 3
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(DecodeError) as exc:
            unpack(io.BytesIO(_tar_with((info, None))), dest)
        assert exc.value.reason is DecodeReason.UNSAFE_ENTRY

    def test_duplicate_entry_rejected(self, tmp_path):
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(DecodeError) as exc:
            unpack(io.BytesIO(_tar_with(_file("a", b"1"), _file("a", b"2"))), dest)
        assert exc.value.reason is DecodeReason.UNSAFE_ENTRY

    def test_garbage_is_corrupt(self, tmp_path):
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(DecodeError) as exc:
            unpack(io.BytesIO(b"definitely not a tar archive " * 40), dest)
        assert exc.value.reason is DecodeReason.CORRUPT_STREAM

    def test_truncated_member_is_corrupt(self, tmp_path):
        data = _tar_with(_file("big", b"z" * 5000))
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(DecodeError) as exc:
            unpack(io.BytesIO(data[:2048]), dest)
        assert exc.value.reason is DecodeReason.CORRUPT_STREAM
