"""
Payload archive: deterministic tar stream of a staged directory.

Entries are emitted in lexicographic order of their relative POSIX path.
Each records path, type, permission bits, size and content (or link target).
Timestamps and ownership are zeroed so identical trees archive to identical
bytes.

Unpacking is the inverse and refuses anything that could escape the
destination: absolute names, ``..`` components, links pointing outside the
tree, devices, FIFOs and duplicate entries.
"""

from __future__ import annotations

import logging
import os
import posixpath
import stat
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable

from lxe import IO_CHUNK_SIZE
from lxe.errors import DecodeError, DecodeReason

log = logging.getLogger(__name__)

_MODE_MASK = 0o777  # setuid/setgid/sticky are never carried


@dataclass(frozen=True)
class TreeEntry:
    """One archived filesystem object."""

    path: str  # relative, POSIX separators
    kind: str  # "file" | "dir" | "symlink"
    mode: int
    size: int = 0
    linkname: str = ""


@dataclass
class ArchiveStats:
    entries: int = 0
    files: int = 0
    content_bytes: int = 0
    archive_bytes: int = 0


class _CountingWriter:
    """Forwards writes, counting bytes (tarfile only needs ``write``)."""

    def __init__(self, inner: BinaryIO) -> None:
        self._inner = inner
        self.count = 0

    def write(self, data) -> int:
        self._inner.write(data)
        self.count += len(data)
        return len(data)


def scan_tree(root: str | Path) -> list[TreeEntry]:
    """List a directory tree in archive order without following symlinks."""
    root = Path(root)
    entries: list[TreeEntry] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        for name in dirnames + filenames:
            full = Path(dirpath) / name
            rel = full.relative_to(root).as_posix()
            st = os.lstat(full)
            if stat.S_ISLNK(st.st_mode):
                entries.append(TreeEntry(rel, "symlink", 0o777, 0, os.readlink(full)))
            elif stat.S_ISDIR(st.st_mode):
                entries.append(TreeEntry(rel, "dir", st.st_mode & _MODE_MASK))
            elif stat.S_ISREG(st.st_mode):
                entries.append(TreeEntry(rel, "file", st.st_mode & _MODE_MASK, st.st_size))
            else:
                raise ValueError(f"Unsupported file type in staged tree: {rel}")
    entries.sort(key=lambda e: e.path)
    return entries


def _tarinfo(entry: TreeEntry) -> tarfile.TarInfo:
    info = tarfile.TarInfo(entry.path)
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mode = entry.mode
    if entry.kind == "dir":
        info.type = tarfile.DIRTYPE
    elif entry.kind == "symlink":
        info.type = tarfile.SYMTYPE
        info.linkname = entry.linkname
    else:
        info.type = tarfile.REGTYPE
        info.size = entry.size
    return info


def archive_tree(root: str | Path, out: BinaryIO) -> ArchiveStats:
    """Write the uncompressed archive of ``root`` to ``out``."""
    root = Path(root)
    counter = _CountingWriter(out)
    stats = ArchiveStats()
    with tarfile.open(fileobj=counter, mode="w|", format=tarfile.PAX_FORMAT) as tar:
        for entry in scan_tree(root):
            info = _tarinfo(entry)
            if entry.kind == "file":
                with open(root / entry.path, "rb") as f:
                    tar.addfile(info, f)
                stats.files += 1
                stats.content_bytes += entry.size
            else:
                tar.addfile(info)
            stats.entries += 1
    stats.archive_bytes = counter.count
    log.debug("Archived %d entries (%d bytes) from %s", stats.entries, stats.archive_bytes, root)
    return stats


# ---------------------------------------------------------------------------
# Unpack
# ---------------------------------------------------------------------------

def _safe_name(name: str) -> str:
    norm = posixpath.normpath(name)
    if (
        not name
        or "\x00" in name
        or posixpath.isabs(name)
        or norm == "."
        or norm.startswith("../")
        or norm == ".."
        or ".." in name.split("/")
    ):
        raise DecodeError(DecodeReason.UNSAFE_ENTRY, f"Unsafe archive path: {name!r}")
    return norm


def _check_link(name: str, linkname: str) -> None:
    if not linkname or posixpath.isabs(linkname):
        raise DecodeError(DecodeReason.UNSAFE_ENTRY, f"Unsafe symlink target for {name!r}: {linkname!r}")
    resolved = posixpath.normpath(posixpath.join(posixpath.dirname(name), linkname))
    if resolved == ".." or resolved.startswith("../"):
        raise DecodeError(DecodeReason.UNSAFE_ENTRY, f"Symlink {name!r} escapes the package: {linkname!r}")


def _check_parents(name: str, links: set[str], dest_real: str, target: Path) -> None:
    # Entries never live below a symlink in a tree we archived ourselves
    parts = name.split("/")
    for i in range(1, len(parts) + 1):
        if "/".join(parts[:i]) in links:
            raise DecodeError(DecodeReason.UNSAFE_ENTRY, f"Archive entry {name!r} goes through a symlink")
    parent = os.path.realpath(target.parent)
    if parent != dest_real and not parent.startswith(dest_real + os.sep):
        raise DecodeError(DecodeReason.UNSAFE_ENTRY, f"Archive entry {name!r} escapes the package")


def _write_file(src: BinaryIO, target: Path, mode: int) -> int:
    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    written = 0
    with os.fdopen(fd, "wb") as out:
        while True:
            chunk = src.read(IO_CHUNK_SIZE)
            if not chunk:
                break
            out.write(chunk)
            written += len(chunk)
    os.chmod(target, mode)
    return written


def unpack(
    src: BinaryIO,
    dest: str | Path,
    on_entry: Callable[[str, int], None] | None = None,
) -> list[str]:
    """Extract an archive stream into ``dest``.

    Args:
        src: readable yielding the uncompressed archive.
        dest: existing, empty directory.
        on_entry: called with (relative path, bytes written) after each entry;
            may raise to abort (used for cancellation).

    Returns:
        Relative paths of extracted files and symlinks, in archive order.
    """
    dest = Path(dest)
    extracted: list[str] = []
    dir_modes: list[tuple[Path, int]] = []
    links: set[str] = set()
    dest_real = os.path.realpath(dest)
    try:
        with tarfile.open(fileobj=src, mode="r|") as tar:
            for member in tar:
                name = _safe_name(member.name)
                target = dest / name
                _check_parents(name, links, dest_real, target)
                written = 0
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    dir_modes.append((target, (member.mode & _MODE_MASK) | 0o700))
                elif member.isfile():
                    target.parent.mkdir(parents=True, exist_ok=True)
                    fobj = tar.extractfile(member)
                    written = _write_file(fobj, target, member.mode & _MODE_MASK)
                    if written != member.size:
                        raise DecodeError(DecodeReason.CORRUPT_STREAM, f"Short entry: {name}")
                    extracted.append(name)
                elif member.issym():
                    _check_link(name, member.linkname)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    os.symlink(member.linkname, target)
                    links.add(name)
                    extracted.append(name)
                else:
                    raise DecodeError(DecodeReason.UNSAFE_ENTRY, f"Unsupported archive entry type: {name!r}")
                if on_entry is not None:
                    on_entry(name, written)
    except FileExistsError as e:
        raise DecodeError(DecodeReason.UNSAFE_ENTRY, f"Duplicate archive entry: {e.filename}") from e
    except (tarfile.TarError, EOFError) as e:
        raise DecodeError(DecodeReason.CORRUPT_STREAM, f"Corrupt payload archive: {e}") from e

    # Directory modes last so read-only directories can still be populated
    for path, mode in reversed(dir_modes):
        os.chmod(path, mode)
    return extracted
