"""
Uninstall registry: one JSON file per scope mapping app_id -> record.

File layout::

    {"format": 1, "packages": {"<app_id>": {...record...}, ...}}

Every read-modify-write happens under an exclusive ``flock`` on
``registry.lock`` next to the file. Writes are atomic (temp + fsync +
os.replace), so readers never see a half-written registry. A file that
exists but cannot be parsed is reported, never silently reset.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from lxe.errors import RegistryError, RegistryReason
from lxe.metadata import validate_app_id

log = logging.getLogger(__name__)

REGISTRY_FORMAT = 1


class Trust(str, Enum):
    """Outcome of the signature policy for an installed package."""

    VERIFIED = "verified"
    UNSIGNED = "unsigned"
    UNVERIFIED = "unverified"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class InstalledPackageRecord:
    """What was installed for one app_id, and where."""

    app_id: str
    name: str
    version: str
    scope: str
    install_root: str
    files: list[str] = field(default_factory=list)
    executable: str = ""
    installed_at: str = field(default_factory=_now)
    trust: Trust = Trust.UNSIGNED

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["trust"] = self.trust.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> InstalledPackageRecord:
        try:
            return cls(
                app_id=d["app_id"],
                name=d["name"],
                version=d["version"],
                scope=d["scope"],
                install_root=d["install_root"],
                files=list(d.get("files", [])),
                executable=d.get("executable", ""),
                installed_at=d.get("installed_at", ""),
                trust=Trust(d.get("trust", Trust.UNSIGNED.value)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RegistryError(RegistryReason.CORRUPT, f"Invalid registry record: {e}") from e


class Registry:
    """Locked, atomically written registry of installed packages.

    Usage:
        reg = Registry(paths.registry_path)
        with reg.transaction() as records:
            records[app_id] = record
    """

    def __init__(self, path: str | Path, locks_dir: str | Path | None = None) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name("registry.lock")
        self.locks_dir = Path(locks_dir) if locks_dir else self.path.parent / "locks"

    def _ensure_dirs(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RegistryError(RegistryReason.IO_ERROR, f"Cannot create {self.path.parent}: {e}") from e

    @contextlib.contextmanager
    def _flock(self, lock_path: Path) -> Iterator[None]:
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lf = lock_path.open("a+", encoding="utf-8")
        except OSError as e:
            raise RegistryError(RegistryReason.IO_ERROR, f"Cannot open lock {lock_path}: {e}") from e
        with lf:
            fcntl.flock(lf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lf.fileno(), fcntl.LOCK_UN)

    def lock(self) -> contextlib.AbstractContextManager[None]:
        """Exclusive registry lock. Not reentrant: do not nest."""
        return self._flock(self.lock_path)

    def app_lock(self, app_id: str) -> contextlib.AbstractContextManager[None]:
        """Per-app lock held for a whole install/uninstall of ``app_id``."""
        validate_app_id(app_id)
        return self._flock(self.locks_dir / f"{app_id}.lock")

    # -- raw file access (caller holds the lock) -------------------------

    def _read(self) -> dict[str, InstalledPackageRecord]:
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise RegistryError(RegistryReason.CORRUPT, f"Registry {self.path} is corrupt: {e}") from e
        except OSError as e:
            raise RegistryError(RegistryReason.IO_ERROR, f"Cannot read registry {self.path}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("packages"), dict):
            raise RegistryError(RegistryReason.CORRUPT, f"Registry {self.path} has an unexpected layout")
        records = {}
        for app_id, raw in data["packages"].items():
            if not isinstance(raw, dict) or raw.get("app_id") != app_id:
                raise RegistryError(RegistryReason.CORRUPT, f"Registry entry for {app_id!r} is inconsistent")
            records[app_id] = InstalledPackageRecord.from_dict(raw)
        return records

    def _write(self, records: dict[str, InstalledPackageRecord]) -> None:
        self._ensure_dirs()
        payload = {
            "format": REGISTRY_FORMAT,
            "packages": {k: records[k].to_dict() for k in sorted(records)},
        }
        data = json.dumps(payload, indent=2, sort_keys=True).encode("utf-8")
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp", prefix=".registry_")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise RegistryError(RegistryReason.IO_ERROR, f"Cannot write registry {self.path}: {e}") from e

    # -- public API ------------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[dict[str, InstalledPackageRecord]]:
        """Locked read-modify-write. Changes are written only if the block succeeds."""
        with self.lock():
            records = self._read()
            yield records
            self._write(records)

    def get(self, app_id: str) -> InstalledPackageRecord | None:
        with self.lock():
            return self._read().get(app_id)

    def put(self, record: InstalledPackageRecord) -> None:
        validate_app_id(record.app_id)
        with self.transaction() as records:
            records[record.app_id] = record
        log.debug("Registered %s %s in %s", record.app_id, record.version, self.path)

    def remove(self, app_id: str) -> InstalledPackageRecord | None:
        with self.transaction() as records:
            return records.pop(app_id, None)

    def list(self) -> list[InstalledPackageRecord]:
        with self.lock():
            records = self._read()
        return [records[k] for k in sorted(records)]
