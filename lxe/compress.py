"""
Fixed-level zstd streaming compression.

Build side compresses once per release at level 19 into a single frame with
a content checksum. Install side decompresses incrementally; a truncated
frame, a bad checksum or trailing bytes after the frame raise
``DecodeError(CORRUPT_STREAM)``. Output is never silently cut short.
"""

from __future__ import annotations

import contextlib
import io
from typing import BinaryIO, Iterator

import zstandard as zstd

from lxe import COMPRESSION_LEVEL, IO_CHUNK_SIZE
from lxe.errors import DecodeError, DecodeReason

# Smaller input reads keep per-call output bounded on highly compressible data
_DECODE_INPUT_CHUNK = 16 * 1024


def _compressor() -> zstd.ZstdCompressor:
    # threads=0: single-threaded, output is byte-identical across runs
    return zstd.ZstdCompressor(level=COMPRESSION_LEVEL, write_checksum=True, threads=0)


@contextlib.contextmanager
def compressing_writer(dst: BinaryIO) -> Iterator[BinaryIO]:
    """Yield a writable that compresses into ``dst``; the frame is finished on exit.

    ``dst`` is left open.
    """
    writer = _compressor().stream_writer(dst, closefd=False)
    try:
        yield writer
    finally:
        writer.close()


def compress_stream(src: BinaryIO, dst: BinaryIO) -> int:
    """Compress everything from ``src`` into ``dst``. Returns bytes written."""
    _read, written = _compressor().copy_stream(src, dst, read_size=IO_CHUNK_SIZE)
    return written


def compress_bytes(data: bytes) -> bytes:
    out = io.BytesIO()
    compress_stream(io.BytesIO(data), out)
    return out.getvalue()


class DecompressingReader(io.RawIOBase):
    """Readable view of decompressed data pulled lazily from ``src``."""

    def __init__(self, src: BinaryIO) -> None:
        super().__init__()
        self._src = src
        self._dobj = zstd.ZstdDecompressor().decompressobj()
        self._buffer = bytearray()
        self._finished = False

    def readable(self) -> bool:
        return True

    def _fill(self) -> None:
        while not self._buffer and not self._finished:
            chunk = self._src.read(_DECODE_INPUT_CHUNK)
            if not chunk:
                if not self._dobj.eof:
                    raise DecodeError(DecodeReason.CORRUPT_STREAM, "Compressed stream is truncated")
                self._finished = True
                return
            if self._dobj.eof:
                raise DecodeError(DecodeReason.CORRUPT_STREAM, "Trailing data after compressed frame")
            try:
                self._buffer += self._dobj.decompress(chunk)
            except zstd.ZstdError as e:
                raise DecodeError(DecodeReason.CORRUPT_STREAM, f"Corrupt compressed stream: {e}") from e
            if self._dobj.eof and self._dobj.unused_data:
                raise DecodeError(DecodeReason.CORRUPT_STREAM, "Trailing data after compressed frame")

    def readinto(self, b) -> int:
        self._fill()
        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        del self._buffer[:n]
        return n


def decompress_stream(src: BinaryIO) -> io.BufferedReader:
    """Wrap ``src`` in a buffered, lazily decompressing reader."""
    return io.BufferedReader(DecompressingReader(src), buffer_size=IO_CHUNK_SIZE)


def decompress_bytes(data: bytes) -> bytes:
    return decompress_stream(io.BytesIO(data)).read()
