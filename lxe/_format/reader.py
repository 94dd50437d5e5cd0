"""
Reader: seek-based accessors for container files.

Speed features:
  - Footer read from the last 64 bytes (O(1) self-location, any stub size)
  - Metadata and checksum read by absolute offset, payload streamed lazily
  - Nothing before ``magic_offset`` is ever read

Security features:
  - Footer offsets validated against the real file size before any seek
  - Region magic checked at ``magic_offset``
  - Metadata size capped and required to be in canonical form
"""

from __future__ import annotations

import builtins
import hashlib
import io
import os
from pathlib import Path
from typing import BinaryIO

from lxe import CHECKSUM_SIZE, CONTAINER_MAGIC, IO_CHUNK_SIZE
from lxe._format.spec import FOOTER_SIZE, MAGIC_SIZE, ContainerOffsets
from lxe.errors import FormatError, FormatReason
from lxe.metadata import PackageMetadata


def _file_size(handle: BinaryIO) -> int:
    handle.seek(0, os.SEEK_END)
    return handle.tell()


def _read_at(handle: BinaryIO, offset: int, length: int) -> bytes:
    handle.seek(offset)
    data = handle.read(length)
    if len(data) != length:
        raise FormatError(
            FormatReason.BAD_OFFSETS,
            f"Unexpected end of file reading {length} bytes at offset {offset}",
        )
    return data


def read_footer(handle: BinaryIO) -> ContainerOffsets:
    """Locate every region from the fixed-width trailer."""
    size = _file_size(handle)
    if size < FOOTER_SIZE:
        raise FormatError(
            FormatReason.TRUNCATED_FOOTER,
            f"File is {size} bytes, shorter than the {FOOTER_SIZE}-byte footer",
        )
    offsets = ContainerOffsets.unpack(_read_at(handle, size - FOOTER_SIZE, FOOTER_SIZE))
    offsets.validate(size)
    if _read_at(handle, offsets.magic_offset, MAGIC_SIZE) != CONTAINER_MAGIC:
        raise FormatError(FormatReason.BAD_MAGIC, f"Region magic missing at offset {offsets.magic_offset}")
    return offsets


def read_metadata_bytes(handle: BinaryIO, offsets: ContainerOffsets) -> bytes:
    return _read_at(handle, offsets.metadata_offset, offsets.metadata_length)


def read_metadata(handle: BinaryIO, offsets: ContainerOffsets) -> PackageMetadata:
    raw = read_metadata_bytes(handle, offsets)
    try:
        return PackageMetadata.from_json_bytes(raw)
    except (ValueError, TypeError) as e:
        raise FormatError(FormatReason.BAD_METADATA, f"Invalid metadata: {e}") from e


def read_payload_checksum(handle: BinaryIO, offsets: ContainerOffsets) -> bytes:
    return _read_at(handle, offsets.checksum_offset, CHECKSUM_SIZE)


class PayloadStream(io.RawIOBase):
    """Finite, single-pass view of the payload region.

    Tracks its own position and seeks before every read, so other accessors
    may share the underlying handle. Re-open with ``read_payload_stream``
    to start over; there is no rewind.
    """

    def __init__(self, handle: BinaryIO, offset: int, length: int) -> None:
        super().__init__()
        self._handle = handle
        self._pos = offset
        self._remaining = length

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if self._remaining <= 0:
            return 0
        want = min(len(b), self._remaining)
        self._handle.seek(self._pos)
        data = self._handle.read(want)
        if not data:
            raise FormatError(FormatReason.BAD_OFFSETS, "Payload region ended early")
        n = len(data)
        b[:n] = data
        self._pos += n
        self._remaining -= n
        return n

    @property
    def remaining(self) -> int:
        return self._remaining


def read_payload_stream(handle: BinaryIO, offsets: ContainerOffsets) -> PayloadStream:
    return PayloadStream(handle, offsets.payload_offset, offsets.payload_length)


def hash_payload(handle: BinaryIO, offsets: ContainerOffsets) -> bytes:
    """SHA-256 over the payload region, streamed."""
    h = hashlib.sha256()
    stream = read_payload_stream(handle, offsets)
    while True:
        chunk = stream.read(IO_CHUNK_SIZE)
        if not chunk:
            break
        h.update(chunk)
    return h.digest()


class ContainerReader:
    """
    Container file reader.

    Usage:
        with ContainerReader.open("app.lxe") as reader:
            meta = reader.metadata
            stream = reader.payload_stream()
            for chunk in iter(lambda: stream.read(65536), b""):
                ...
    """

    def __init__(self, handle: BinaryIO, path: Path | None = None) -> None:
        self._handle = handle
        self.path = path
        self.offsets = read_footer(handle)
        self.metadata_bytes = read_metadata_bytes(handle, self.offsets)
        self.metadata = read_metadata(handle, self.offsets)
        self.checksum = read_payload_checksum(handle, self.offsets)

    @staticmethod
    def is_container(path: str | Path) -> bool:
        """Fast check: reads only the footer."""
        try:
            with builtins.open(path, "rb") as f:
                read_footer(f)
        except (FormatError, OSError):
            return False
        return True

    @classmethod
    def open(cls, path: str | Path) -> ContainerReader:
        path = Path(path)
        f = builtins.open(path, "rb")
        try:
            return cls(f, path)
        except BaseException:
            f.close()
            raise

    def payload_stream(self) -> PayloadStream:
        return read_payload_stream(self._handle, self.offsets)

    def compute_checksum(self) -> bytes:
        return hash_payload(self._handle, self.offsets)

    def close(self) -> None:
        self._handle.close()

    def __enter__(self) -> ContainerReader:
        return self

    def __exit__(self, *args) -> None:
        self.close()
