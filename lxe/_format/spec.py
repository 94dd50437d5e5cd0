"""
Container Format Specification v1.

Layout (tail-anchored):
    [runtime stub]               <- any executable prefix, size unknown at build time
    [MAGIC: 8 bytes]             <- \\x00LXE\\xf0\\x9f\\x93\\x01, region sentinel
    [metadata]                   <- canonical UTF-8 JSON (see lxe.metadata)
    [checksum: 32 bytes]         <- raw SHA-256 of the compressed payload
    [payload]                    <- single zstd frame of a tar archive
    [FOOTER: 64 bytes]           <- fixed-width trailer, always the last 64 bytes

Footer (little-endian):
    footer_magic     8s   "LXEFOOT\\x01"
    format_version   u32
    reserved         u32  (zero)
    magic_offset     u64  absolute offset from file start
    metadata_offset  u64
    metadata_length  u64
    checksum_offset  u64
    payload_offset   u64
    payload_length   u64

Self-location:
    The runtime reads its own file, seeks to size - 64, and jumps straight to
    every region. Nothing depends on the stub's size, so a stub can be
    appended to without re-encoding anything that follows it.

Regions are contiguous and in fixed order; readers reject any footer whose
offsets disagree with that order or run past the footer.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from lxe import (
    CHECKSUM_SIZE,
    CONTAINER_MAGIC,
    FOOTER_MAGIC,
    FORMAT_VERSION,
    MAX_METADATA_SIZE,
)
from lxe.errors import FormatError, FormatReason

FOOTER_STRUCT = struct.Struct("<8sIIQQQQQQ")
FOOTER_SIZE = FOOTER_STRUCT.size  # 64

# Reject unknown versions to prevent downgrade/confusion attacks
SUPPORTED_FORMAT_VERSIONS = frozenset({FORMAT_VERSION})

MAGIC_SIZE = len(CONTAINER_MAGIC)

# File extension
EXTENSION = ".lxe"


@dataclass(frozen=True)
class ContainerOffsets:
    """Absolute byte positions of every region, as stored in the footer."""

    format_version: int
    magic_offset: int
    metadata_offset: int
    metadata_length: int
    checksum_offset: int
    payload_offset: int
    payload_length: int

    @property
    def stub_length(self) -> int:
        return self.magic_offset

    @property
    def footer_offset(self) -> int:
        return self.payload_offset + self.payload_length

    def pack(self) -> bytes:
        return FOOTER_STRUCT.pack(
            FOOTER_MAGIC,
            self.format_version,
            0,
            self.magic_offset,
            self.metadata_offset,
            self.metadata_length,
            self.checksum_offset,
            self.payload_offset,
            self.payload_length,
        )

    @classmethod
    def unpack(cls, footer: bytes) -> ContainerOffsets:
        if len(footer) != FOOTER_SIZE:
            raise FormatError(
                FormatReason.TRUNCATED_FOOTER,
                f"Footer must be {FOOTER_SIZE} bytes, got {len(footer)}",
            )
        (magic, version, _reserved, magic_off, meta_off, meta_len,
         sum_off, payload_off, payload_len) = FOOTER_STRUCT.unpack(footer)
        if magic != FOOTER_MAGIC:
            raise FormatError(FormatReason.BAD_MAGIC, "Not an LXE container (footer magic missing)")
        if version not in SUPPORTED_FORMAT_VERSIONS:
            raise FormatError(
                FormatReason.UNSUPPORTED_VERSION,
                f"Unsupported format version: {version}. "
                f"Supported: {', '.join(str(v) for v in sorted(SUPPORTED_FORMAT_VERSIONS))}",
            )
        return cls(
            format_version=version,
            magic_offset=magic_off,
            metadata_offset=meta_off,
            metadata_length=meta_len,
            checksum_offset=sum_off,
            payload_offset=payload_off,
            payload_length=payload_len,
        )

    @classmethod
    def for_regions(cls, stub_length: int, metadata_length: int, payload_length: int) -> ContainerOffsets:
        """Compute offsets for regions laid out back to back after a stub."""
        metadata_offset = stub_length + MAGIC_SIZE
        checksum_offset = metadata_offset + metadata_length
        payload_offset = checksum_offset + CHECKSUM_SIZE
        return cls(
            format_version=FORMAT_VERSION,
            magic_offset=stub_length,
            metadata_offset=metadata_offset,
            metadata_length=metadata_length,
            checksum_offset=checksum_offset,
            payload_offset=payload_offset,
            payload_length=payload_length,
        )

    def validate(self, file_size: int) -> None:
        """Bounds/order check against the actual file size."""
        expected = ContainerOffsets.for_regions(
            self.magic_offset, self.metadata_length, self.payload_length,
        )
        if expected != self:
            raise FormatError(FormatReason.BAD_OFFSETS, "Footer regions are not contiguous")
        if self.footer_offset + FOOTER_SIZE != file_size:
            raise FormatError(
                FormatReason.BAD_OFFSETS,
                f"Footer regions end at {self.footer_offset}, file footer starts at {file_size - FOOTER_SIZE}",
            )
        if self.metadata_length == 0 or self.metadata_length > MAX_METADATA_SIZE:
            raise FormatError(
                FormatReason.BAD_OFFSETS,
                f"Metadata length {self.metadata_length} outside 1..{MAX_METADATA_SIZE}",
            )
