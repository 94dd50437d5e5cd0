"""
Packer: turns a staged directory plus metadata into a container file.

Pipeline:
    validate -> archive (deterministic tar) -> zstd level 19 -> SHA-256
    -> fill payload fields -> optional Ed25519 signature -> assemble
    -> atomic write (mode 0755)

The compressed payload is spooled to an anonymous temp file next to the
output, so memory use does not grow with the package size. Identical inputs
produce byte-identical containers.
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from lxe._format import ContainerOffsets, ContainerWriter
from lxe.compress import compressing_writer
from lxe.config import BuildConfig
from lxe.errors import BuildError, BuildReason
from lxe.metadata import PackageMetadata
from lxe.payload import archive_tree
from lxe.signing import KeyPair, load_private_key, sign
from lxe.stub import default_stub

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildResult:
    path: Path
    metadata: PackageMetadata
    checksum: str
    offsets: ContainerOffsets

    @property
    def payload_size(self) -> int:
        return self.metadata.payload_size

    @property
    def install_size(self) -> int:
        return self.metadata.install_size

    @property
    def signed(self) -> bool:
        return self.metadata.is_signed


class _HashingWriter:
    """Hashes bytes on their way to ``inner``."""

    def __init__(self, inner: BinaryIO) -> None:
        self._inner = inner
        self.sha = hashlib.sha256()
        self.size = 0

    def write(self, data) -> int:
        self._inner.write(data)
        self.sha.update(data)
        self.size += len(data)
        return len(data)

    def flush(self) -> None:
        self._inner.flush()


def validate_inputs(staged_dir: Path, metadata: PackageMetadata) -> None:
    """Check the staged tree provides what the metadata declares."""
    if not staged_dir.is_dir():
        raise BuildError(BuildReason.IO_ERROR, f"Input directory does not exist: {staged_dir}")

    exe = staged_dir / metadata.executable
    try:
        st = os.stat(exe)
    except OSError:
        raise BuildError(BuildReason.MISSING_EXECUTABLE, f"Executable not found: {metadata.executable}") from None
    if not stat.S_ISREG(st.st_mode):
        raise BuildError(BuildReason.MISSING_EXECUTABLE, f"Executable is not a regular file: {metadata.executable}")
    if not st.st_mode & 0o111:
        raise BuildError(BuildReason.MISSING_EXECUTABLE, f"Executable has no execute bit: {metadata.executable}")

    if metadata.icon is not None and not (staged_dir / metadata.icon).is_file():
        raise BuildError(BuildReason.MISSING_ICON, f"Icon file not found: {metadata.icon}")


def _stub_bytes(runtime_stub: bytes | str | Path | None) -> bytes:
    if runtime_stub is None:
        return default_stub()
    if isinstance(runtime_stub, (bytes, bytearray)):
        return bytes(runtime_stub)
    return Path(runtime_stub).read_bytes()


def _signing_pair(signing_key: bytes | KeyPair | str | Path | None) -> KeyPair | bytes | None:
    if signing_key is None or isinstance(signing_key, (KeyPair, bytes)):
        return signing_key
    return load_private_key(signing_key)


def build(
    staged_dir: str | Path,
    metadata: PackageMetadata,
    runtime_stub: bytes | str | Path | None,
    output_path: str | Path,
    signing_key: bytes | KeyPair | str | Path | None = None,
) -> BuildResult:
    """Assemble a container from ``staged_dir``.

    Args:
        staged_dir: directory whose contents become the install root.
        metadata: describes the app; payload fields are filled in here.
        runtime_stub: stub bytes or a path to one; None for the default
            POSIX-sh stub.
        output_path: destination file, replaced atomically.
        signing_key: 32-byte seed, KeyPair or private key file; unsigned if None.

    Raises:
        BuildError: MISSING_EXECUTABLE / MISSING_ICON for bad input,
            IO_ERROR for anything the filesystem refuses. No partial output
            is left behind.
    """
    staged_dir = Path(staged_dir)
    output_path = Path(output_path)
    validate_inputs(staged_dir, metadata)

    try:
        stub = _stub_bytes(runtime_stub)
        key = _signing_pair(signing_key)
    except (OSError, ValueError) as e:
        raise BuildError(BuildReason.IO_ERROR, f"Cannot load build input: {e}") from e

    try:
        with tempfile.TemporaryFile(dir=output_path.parent, prefix=".lxe-payload-") as spool:
            hashing = _HashingWriter(spool)
            with compressing_writer(hashing) as zw:
                stats = archive_tree(staged_dir, zw)
            checksum = hashing.sha.digest()

            meta = metadata.with_payload(
                install_size=stats.archive_bytes,
                payload_size=hashing.size,
                payload_checksum=checksum.hex(),
            )
            if key is not None:
                meta = meta.with_signature(sign(key, checksum, meta.signable_bytes()))

            spool.seek(0)
            offsets = ContainerWriter.write(output_path, stub, meta, checksum, spool, hashing.size)
    except (OSError, ValueError) as e:
        raise BuildError(BuildReason.IO_ERROR, f"Failed to write {output_path}: {e}") from e

    log.info(
        "Built %s %s -> %s (%d files, %d -> %d bytes%s)",
        meta.app_id, meta.version, output_path, stats.files,
        stats.archive_bytes, meta.payload_size, ", signed" if meta.is_signed else "",
    )
    return BuildResult(path=output_path, metadata=meta, checksum=checksum.hex(), offsets=offsets)


def run_build_script(config: BuildConfig) -> None:
    """Run the optional ``[build] script`` in the config directory."""
    if not config.script:
        return
    log.info("Running build script: %s", config.script)
    try:
        subprocess.run(config.script, shell=True, cwd=config.base_dir, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise BuildError(BuildReason.IO_ERROR, f"Build script failed: {e}") from e


def build_from_config(config: BuildConfig, run_script: bool = True) -> BuildResult:
    """Drive ``build`` from a parsed ``lxe.toml``."""
    if run_script:
        run_build_script(config)
    return build(
        config.input_dir,
        config.metadata,
        runtime_stub=config.runtime_path,
        output_path=config.output_path,
        signing_key=config.key_path,
    )
