"""
Self-update: replace the installed ``lxe`` binary from an update container.

The update arrives as an ordinary container whose executable is the new
binary. It is located and verified exactly like a package, unpacked next to
the target, run with ``--version``, then swapped in. The previous binary
is kept as ``<name>.old`` until the swapped-in copy runs OK; any failure
puts the old binary back.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from lxe.compress import decompress_stream
from lxe.errors import DecodeError, InstallError, InstallReason
from lxe.installer import check_checksum, evaluate_trust, locate
from lxe.payload import unpack
from lxe.registry import Trust

log = logging.getLogger(__name__)

DEFAULT_CHECK_TIMEOUT = 10.0


@dataclass(frozen=True)
class SelfUpdateResult:
    target: Path
    version: str
    trust: Trust


def current_binary() -> Path:
    """Best guess at the binary to replace."""
    if getattr(sys, "frozen", False):
        return Path(sys.executable)
    found = shutil.which("lxe")
    if found:
        return Path(found).resolve()
    return Path(sys.argv[0]).resolve()


def check_version(binary: Path, timeout: float = DEFAULT_CHECK_TIMEOUT) -> str:
    """Run ``<binary> --version``; return its output or raise VERSION_CHECK_FAILED."""
    try:
        proc = subprocess.run(
            [str(binary), "--version"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise InstallError(InstallReason.VERSION_CHECK_FAILED, f"{binary} did not run: {e}") from e
    if proc.returncode != 0:
        raise InstallError(
            InstallReason.VERSION_CHECK_FAILED,
            f"{binary} --version exited with {proc.returncode}: {proc.stderr.strip()}",
        )
    return proc.stdout.strip()


def self_update(
    container_path: str | Path,
    target: str | Path | None = None,
    trusted_keys: Iterable[bytes] = (),
    require_signature: bool = True,
    check_timeout: float = DEFAULT_CHECK_TIMEOUT,
) -> SelfUpdateResult:
    """Verify ``container_path`` and swap its executable in for ``target``."""
    target = Path(target) if target else current_binary()
    if not target.is_file():
        raise InstallError(InstallReason.IO_ERROR, f"Binary to update not found: {target}")

    with locate(container_path) as reader:
        meta = reader.metadata
        check_checksum(reader)
        trust = evaluate_trust(reader, trusted_keys)
        if require_signature and trust is not Trust.VERIFIED:
            raise InstallError(InstallReason.SIGNATURE_INVALID, "Update is not signed by a trusted key")

        staging = Path(tempfile.mkdtemp(prefix=".lxe-update-", dir=target.parent))
        try:
            try:
                unpack(decompress_stream(reader.payload_stream()), staging)
            except DecodeError as e:
                raise InstallError(InstallReason.CORRUPT_PAYLOAD, str(e)) from e
            new = staging / meta.executable
            if not new.is_file():
                raise InstallError(InstallReason.CORRUPT_PAYLOAD, f"Update lacks executable {meta.executable}")
            version = check_version(new, check_timeout)

            backup = target.with_name(target.name + ".old")
            os.replace(target, backup)
            try:
                os.replace(new, target)
                check_version(target, check_timeout)
            except BaseException:
                log.warning("Restoring previous binary %s", target)
                os.replace(backup, target)
                raise
            os.unlink(backup)
        except OSError as e:
            raise InstallError(InstallReason.IO_ERROR, f"Self-update failed: {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    log.info("Updated %s to %s", target, version or meta.version)
    return SelfUpdateResult(target=target, version=version or meta.version, trust=trust)
