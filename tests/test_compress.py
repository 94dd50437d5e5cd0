"""Tests for lxe.compress: zstd streaming with strict corruption detection."""

from __future__ import annotations

import io
import os

import pytest
import zstandard as zstd

from lxe.compress import (
    compress_bytes,
    compress_stream,
    compressing_writer,
    decompress_bytes,
    decompress_stream,
)
from lxe.errors import DecodeError, DecodeReason

DATA = b"".join(f"line {i}: the quick brown fox\n".encode() for i in range(20000)) + os.urandom(4096)


class TestCompress:

    def test_roundtrip(self):
        assert decompress_bytes(compress_bytes(DATA)) == DATA

    def test_actually_compresses(self):
        assert len(compress_bytes(DATA)) < len(DATA) // 4

    def test_deterministic(self):
        assert compress_bytes(DATA) == compress_bytes(DATA)

    def test_frame_has_content_checksum(self):
        params = zstd.get_frame_parameters(compress_bytes(DATA))
        assert params.has_checksum

    def test_writer_matches_stream(self):
        out = io.BytesIO()
        with compressing_writer(out) as w:
            for i in range(0, len(DATA), 7000):
                w.write(DATA[i:i + 7000])
        assert not out.closed
        assert decompress_bytes(out.getvalue()) == DATA

    def test_compress_stream_returns_written(self):
        out = io.BytesIO()
        written = compress_stream(io.BytesIO(DATA), out)
        assert written == len(out.getvalue())


class TestDecompress:

    def test_incremental_reads(self):
        stream = decompress_stream(io.BytesIO(compress_bytes(DATA)))
        chunks = []
        while True:
            chunk = stream.read(1000)
            if not chunk:
                break
            chunks.append(chunk)
        assert b"".join(chunks) == DATA

    def test_truncated_stream(self):
        blob = compress_bytes(DATA)
        with pytest.raises(DecodeError) as exc:
            decompress_bytes(blob[: len(blob) // 2])
        assert exc.value.reason is DecodeReason.CORRUPT_STREAM

    def test_missing_last_byte(self):
        blob = compress_bytes(DATA)
        with pytest.raises(DecodeError):
            decompress_bytes(blob[:-1])

    def test_trailing_garbage(self):
        with pytest.raises(DecodeError, match="Trailing"):
            decompress_bytes(compress_bytes(DATA) + b"garbage")

    def test_flipped_byte(self):
        blob = bytearray(compress_bytes(DATA))
        blob[len(blob) // 2] ^= 0xFF
        with pytest.raises(DecodeError):
            decompress_bytes(bytes(blob))

    def test_not_zstd(self):
        with pytest.raises(DecodeError):
            decompress_bytes(b"this is not a zstd frame at all")

    def test_empty_input(self):
        with pytest.raises(DecodeError):
            decompress_bytes(b"")
