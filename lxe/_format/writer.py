"""
Writer: assembles container files.

Single pass, no convergence loop needed: every region's size is known before
the footer is written, and the footer carries absolute offsets, so the stub
is copied verbatim and never inspected.

Streaming variant copies stub and payload from file objects so a multi-GB
payload is never held in memory.
"""

from __future__ import annotations

import io
import os
import tempfile
from pathlib import Path
from typing import BinaryIO, Union

from lxe import CHECKSUM_SIZE, CONTAINER_MAGIC, IO_CHUNK_SIZE
from lxe._format.spec import ContainerOffsets, EXTENSION
from lxe.metadata import PackageMetadata

StubSource = Union[bytes, BinaryIO]


def _metadata_bytes(metadata: PackageMetadata | bytes) -> bytes:
    if isinstance(metadata, PackageMetadata):
        return metadata.to_json_bytes()
    return bytes(metadata)


def _copy_exact(src: BinaryIO, dst: BinaryIO, length: int | None) -> int:
    """Copy ``length`` bytes (or until EOF when None). Returns bytes copied."""
    copied = 0
    while length is None or copied < length:
        want = IO_CHUNK_SIZE if length is None else min(IO_CHUNK_SIZE, length - copied)
        chunk = src.read(want)
        if not chunk:
            break
        dst.write(chunk)
        copied += len(chunk)
    if length is not None and copied != length:
        raise IOError(f"Short read: expected {length} bytes, got {copied}")
    return copied


class ContainerWriter:

    @staticmethod
    def write_stream(
        out: BinaryIO,
        stub: StubSource,
        metadata: PackageMetadata | bytes,
        checksum: bytes,
        payload: BinaryIO,
        payload_length: int,
    ) -> ContainerOffsets:
        """Write all regions + footer to ``out``. Returns the offsets written."""
        if len(checksum) != CHECKSUM_SIZE:
            raise ValueError(f"Checksum must be {CHECKSUM_SIZE} bytes, got {len(checksum)}")
        meta = _metadata_bytes(metadata)

        if isinstance(stub, (bytes, bytearray, memoryview)):
            out.write(stub)
            stub_length = len(stub)
        else:
            stub_length = _copy_exact(stub, out, None)

        offsets = ContainerOffsets.for_regions(stub_length, len(meta), payload_length)
        out.write(CONTAINER_MAGIC)
        out.write(meta)
        out.write(checksum)
        _copy_exact(payload, out, payload_length)
        out.write(offsets.pack())
        return offsets

    @staticmethod
    def serialize(
        stub: bytes,
        metadata: PackageMetadata | bytes,
        checksum: bytes,
        payload: bytes,
    ) -> bytes:
        """Serialize a container to bytes. Pure, does not mutate inputs."""
        buf = io.BytesIO()
        ContainerWriter.write_stream(buf, stub, metadata, checksum, io.BytesIO(payload), len(payload))
        return buf.getvalue()

    @staticmethod
    def write(
        path: str | Path,
        stub: StubSource,
        metadata: PackageMetadata | bytes,
        checksum: bytes,
        payload: BinaryIO,
        payload_length: int,
        mode: int = 0o755,
    ) -> ContainerOffsets:
        """Write a container file atomically (temp + fsync + os.replace).

        The temp file lives in the destination directory so the final rename
        never crosses filesystems. On any failure the temp file is removed
        and the destination is left untouched.
        """
        dir_name = os.path.dirname(os.path.abspath(path)) or "."
        fd, tmp_path = tempfile.mkstemp(dir=dir_name, prefix=".lxe-", suffix=f"{EXTENSION}.tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                offsets = ContainerWriter.write_stream(f, stub, metadata, checksum, payload, payload_length)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        return offsets


def write_container(
    stub_bytes: bytes,
    metadata: PackageMetadata | bytes,
    checksum: bytes,
    payload_bytes: bytes,
) -> bytes:
    """Concatenate regions in fixed order and append the footer."""
    return ContainerWriter.serialize(stub_bytes, metadata, checksum, payload_bytes)
