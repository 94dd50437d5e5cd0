"""
Installer engine: LOCATED -> VERIFIED -> STAGED -> COMMITTED.

Any step can end in FAILED, which surfaces as ``InstallError(reason)``:

    LOCATED    footer read, metadata parsed               FORMAT, SELF_LOCATE_UNAVAILABLE
    VERIFIED   payload hash + signature policy            CHECKSUM_MISMATCH, SIGNATURE_INVALID
    STAGED     payload unpacked into a private directory  CORRUPT_PAYLOAD, CANCELLED, IO_ERROR
    COMMITTED  files moved into place, record written     PARTIAL_COMMIT, CANCELLED

Commit keeps an explicit undo log. Each step that changes the filesystem
pushes its compensating action; on failure the log is replayed in reverse,
which restores the pre-install state for the app, previous version included.
The registry record is the commit point: once written, the install stands.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

from lxe._format import ContainerReader
from lxe.compress import decompress_stream
from lxe.desktop import icon_target, render_desktop_entry
from lxe.errors import DecodeError, FormatError, InstallError, InstallReason, NotFound
from lxe.metadata import PackageMetadata, validate_app_id, version_key
from lxe.paths import Scope, ScopePaths, is_safe_to_delete
from lxe.payload import scan_tree, unpack
from lxe.registry import InstalledPackageRecord, Registry, Trust
from lxe.signing import key_id, verify as verify_signature

log = logging.getLogger(__name__)

UndoAction = Callable[[], None]


class InstallState(str, Enum):
    LOCATED = "located"
    VERIFIED = "verified"
    STAGED = "staged"
    COMMITTED = "committed"
    FAILED = "failed"


class PackageState(str, Enum):
    """How a container relates to what is already installed."""

    FRESH = "fresh"
    INSTALLED = "installed"
    UPGRADEABLE = "upgradeable"
    DOWNGRADE = "downgrade"
    CORRUPTED = "corrupted"


class CancelToken:
    """Thread-safe cancellation flag checked between install steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise InstallError(InstallReason.CANCELLED, "Installation cancelled")


@dataclass(frozen=True)
class ExtractProgress:
    extracted_bytes: int
    total_bytes: int
    current_file: str

    @property
    def fraction(self) -> float:
        if self.total_bytes <= 0:
            return 1.0
        return min(1.0, self.extracted_bytes / self.total_bytes)


@dataclass
class UninstallResult:
    app_id: str
    version: str
    removed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------

def self_path() -> Path:
    """Path of the running container.

    Frozen runtimes are the container themselves; the shell stub exports
    ``LXE_CONTAINER``; otherwise fall back to ``/proc/self/exe``.
    """
    if getattr(sys, "frozen", False):
        return Path(sys.executable)
    env = os.environ.get("LXE_CONTAINER")
    if env:
        return Path(env)
    try:
        return Path("/proc/self/exe").resolve(strict=True)
    except OSError as e:
        raise InstallError(
            InstallReason.SELF_LOCATE_UNAVAILABLE, "Cannot determine the path of the running package"
        ) from e


def locate(container_path: str | Path) -> ContainerReader:
    """Open a container and read its footer and metadata."""
    try:
        return ContainerReader.open(container_path)
    except FormatError as e:
        raise InstallError(InstallReason.FORMAT, f"{container_path}: {e}") from e
    except OSError as e:
        raise InstallError(InstallReason.IO_ERROR, f"Cannot open {container_path}: {e}") from e


def locate_self() -> ContainerReader:
    return locate(self_path())


def check_checksum(reader: ContainerReader) -> None:
    """Recompute the payload hash and compare it with both recorded copies."""
    meta = reader.metadata
    if meta.payload_size != reader.offsets.payload_length:
        raise InstallError(
            InstallReason.CHECKSUM_MISMATCH,
            f"Payload size mismatch: metadata says {meta.payload_size}, "
            f"container holds {reader.offsets.payload_length}",
        )
    try:
        computed = reader.compute_checksum()
    except OSError as e:
        raise InstallError(InstallReason.IO_ERROR, f"Cannot read payload: {e}") from e
    if computed != reader.checksum or computed.hex() != meta.payload_checksum:
        raise InstallError(InstallReason.CHECKSUM_MISMATCH, "Payload checksum does not match")


def evaluate_trust(reader: ContainerReader, trusted_keys: Iterable[bytes]) -> Trust:
    """Apply signature policy. Absent and invalid signatures stay distinct."""
    meta = reader.metadata
    sig = meta.signature
    if sig is None:
        return Trust.UNSIGNED
    candidates = [k for k in trusted_keys if key_id(k) == sig.key_id]
    if not candidates:
        log.warning("%s is signed by unknown key %s; signature not verified", meta.app_id, sig.key_id)
        return Trust.UNVERIFIED
    if not verify_signature(candidates[0], sig, reader.checksum, meta.signable_bytes()):
        raise InstallError(InstallReason.SIGNATURE_INVALID, f"Invalid signature from {sig.key_id}")
    return Trust.VERIFIED


def _remove_quietly(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        pass


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class Installer:
    """Installs and removes packages for one scope.

    Usage:
        installer = Installer(ScopePaths.for_scope(Scope.USER), trusted_keys=[pub])
        record = installer.install("app.lxe")
    """

    def __init__(
        self,
        paths: ScopePaths,
        registry: Registry | None = None,
        trusted_keys: Iterable[bytes] = (),
        cancel: CancelToken | None = None,
        on_progress: Callable[[ExtractProgress], None] | None = None,
        require_signature: bool = False,
        link_bin: bool = True,
        runtime_command: str | None = None,
    ) -> None:
        self.paths = paths
        self.registry = registry or Registry(paths.registry_path, paths.locks_dir)
        self.trusted_keys = list(trusted_keys)
        self.cancel = cancel or CancelToken()
        self.on_progress = on_progress
        self.require_signature = require_signature
        self.link_bin = link_bin
        self.runtime_command = runtime_command
        self.state: InstallState | None = None
        self.failure: InstallReason | None = None

    def _enter(self, state: InstallState) -> None:
        self.state = state
        log.debug("Installer state -> %s", state.value)

    # -- install ---------------------------------------------------------

    def install(self, container_path: str | Path | None = None) -> InstalledPackageRecord:
        """Install a container (the running one when ``container_path`` is None)."""
        try:
            self._require_root()
            reader = locate(container_path) if container_path is not None else locate_self()
        except InstallError as e:
            self._fail(e)
            raise
        with reader:
            self._enter(InstallState.LOCATED)
            meta = reader.metadata
            try:
                with self.registry.app_lock(meta.app_id):
                    trust = self._verify(reader)
                    staging, entries = self._stage(reader)
                    try:
                        record = self._commit(meta, staging, entries, trust)
                    finally:
                        shutil.rmtree(staging, ignore_errors=True)
            except InstallError as e:
                self._fail(e)
                raise
        return record

    def _require_root(self) -> None:
        if self.paths.scope is Scope.SYSTEM and os.geteuid() != 0:
            raise InstallError(InstallReason.IO_ERROR, "System install needs root")

    def _fail(self, e: InstallError) -> None:
        self.state = InstallState.FAILED
        self.failure = e.reason
        log.debug("Installer failed: %s", e.reason.value)

    def _verify(self, reader: ContainerReader) -> Trust:
        check_checksum(reader)
        trust = evaluate_trust(reader, self.trusted_keys)
        if self.require_signature and trust is not Trust.VERIFIED:
            raise InstallError(InstallReason.SIGNATURE_INVALID, "Package is not signed by a trusted key")
        self._enter(InstallState.VERIFIED)
        return trust

    def _stage(self, reader: ContainerReader) -> tuple[Path, list]:
        meta = reader.metadata
        self.cancel.check()
        try:
            self.paths.namespace_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".lxe-stage-{meta.app_id}-", dir=self.paths.namespace_dir))
        except OSError as e:
            raise InstallError(InstallReason.IO_ERROR, f"Cannot create staging directory: {e}") from e

        extracted = 0

        def on_entry(name: str, written: int) -> None:
            nonlocal extracted
            extracted += written
            if self.on_progress is not None:
                self.on_progress(ExtractProgress(extracted, meta.install_size, name))
            self.cancel.check()

        try:
            unpack(decompress_stream(reader.payload_stream()), staging, on_entry=on_entry)
            if not (staging / meta.executable).is_file():
                raise InstallError(InstallReason.CORRUPT_PAYLOAD, f"Payload lacks executable {meta.executable}")
            entries = scan_tree(staging)
        except DecodeError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise InstallError(InstallReason.CORRUPT_PAYLOAD, str(e)) from e
        except InstallError:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise InstallError(InstallReason.IO_ERROR, f"Staging failed: {e}") from e
        self._enter(InstallState.STAGED)
        return staging, entries

    def _move_file(self, src: Path, dst: Path) -> None:
        """Move one staged file into place (copy + unlink across filesystems)."""
        try:
            os.rename(src, dst)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            shutil.move(str(src), str(dst))

    def _retire(self, path: Path, backup: Path, undo: list[UndoAction]) -> None:
        backup.parent.mkdir(parents=True, exist_ok=True)
        os.rename(path, backup)

        def restore() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            os.rename(backup, path)

        undo.append(restore)

    def _retire_previous(self, app_id: str, root: Path, backup_dir: Path, undo: list[UndoAction]) -> None:
        """Move the current install out of the way, keeping it restorable."""
        previous = self.registry.get(app_id)
        if os.path.lexists(root):
            self._retire(root, backup_dir / "root", undo)
        if previous is None:
            return
        extras = [Path(f) for f in previous.files if not Path(f).is_relative_to(root)]
        for i, path in enumerate(extras):
            if not os.path.lexists(path):
                continue
            if not is_safe_to_delete(path, app_id, self.paths):
                log.warning("Not retiring %s: outside managed locations", path)
                continue
            self._retire(path, backup_dir / "extra" / str(i), undo)

    def _commit(
        self,
        meta: PackageMetadata,
        staging: Path,
        entries: list,
        trust: Trust,
    ) -> InstalledPackageRecord:
        app_id = meta.app_id
        root = self.paths.app_root(app_id)
        undo: list[UndoAction] = []
        installed: list[str] = []
        backup_dir: Path | None = None
        try:
            backup_dir = Path(tempfile.mkdtemp(prefix=f".lxe-backup-{app_id}-", dir=self.paths.namespace_dir))
            self._retire_previous(app_id, root, backup_dir, undo)

            root.mkdir(parents=True)
            undo.append(lambda: shutil.rmtree(root, ignore_errors=True))

            for entry in entries:
                self.cancel.check()
                src, dst = staging / entry.path, root / entry.path
                if entry.kind == "dir":
                    dst.mkdir(mode=entry.mode | 0o700, exist_ok=True)
                    continue
                self._move_file(src, dst)
                undo.append(lambda p=dst: _remove_quietly(p))
                installed.append(str(dst))

            icon_path = self._install_icon(meta, root, undo, installed)
            self._install_desktop_entry(meta, root, icon_path, undo, installed)
            if self.link_bin:
                self._link_bin(meta, root, undo, installed)

            self.cancel.check()
            record = InstalledPackageRecord(
                app_id=app_id,
                name=meta.name,
                version=meta.version,
                scope=self.paths.scope.value,
                install_root=str(root),
                files=installed,
                executable=meta.executable,
                trust=trust,
            )
            self.registry.put(record)
        except BaseException as e:
            self._rollback(undo)
            if backup_dir is not None:
                shutil.rmtree(backup_dir, ignore_errors=True)
            if isinstance(e, InstallError) and e.reason is InstallReason.CANCELLED:
                raise
            if not isinstance(e, Exception):
                raise
            raise InstallError(InstallReason.PARTIAL_COMMIT, f"Commit of {app_id} failed: {e}") from e

        self._enter(InstallState.COMMITTED)
        shutil.rmtree(backup_dir, ignore_errors=True)
        log.info("Installed %s %s into %s (%s)", app_id, meta.version, root, trust.value)
        return record

    def _rollback(self, undo: list[UndoAction]) -> None:
        for action in reversed(undo):
            try:
                action()
            except OSError as e:
                log.error("Rollback step failed: %s", e)

    def _install_icon(
        self, meta: PackageMetadata, root: Path, undo: list[UndoAction], installed: list[str],
    ) -> Path | None:
        target = icon_target(meta, self.paths)
        if target is None:
            return None
        source = root / meta.icon
        if not source.is_file():
            log.warning("Icon %s missing from payload", meta.icon)
            return None
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        undo.append(lambda: _remove_quietly(target))
        os.chmod(target, 0o644)
        installed.append(str(target))
        return target

    def _install_desktop_entry(
        self, meta: PackageMetadata, root: Path, icon_path: Path | None,
        undo: list[UndoAction], installed: list[str],
    ) -> None:
        target = self.paths.desktop_path(meta.app_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        text = render_desktop_entry(meta, root, icon_path, self.runtime_command)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".lxe-desktop-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.chmod(tmp, 0o644)
            os.replace(tmp, target)
        except BaseException:
            _remove_quietly(Path(tmp))
            raise
        undo.append(lambda: _remove_quietly(target))
        installed.append(str(target))

    def _link_bin(self, meta: PackageMetadata, root: Path, undo: list[UndoAction], installed: list[str]) -> None:
        link = self.paths.bin_dir / Path(meta.executable).name
        target = root / meta.executable
        if os.path.lexists(link):
            log.warning("Not creating launcher %s: path already exists", link)
            return
        link.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(target, link)
        undo.append(lambda: _remove_quietly(link))
        installed.append(str(link))

    # -- uninstall -------------------------------------------------------

    def uninstall(self, app_id: str) -> UninstallResult:
        """Remove every recorded file, the install root and the record."""
        validate_app_id(app_id)
        self._require_root()
        with self.registry.app_lock(app_id):
            record = self.registry.get(app_id)
            if record is None:
                raise NotFound(app_id)
            result = UninstallResult(app_id=app_id, version=record.version)
            root = Path(record.install_root)
            try:
                for f in record.files:
                    path = Path(f)
                    if not os.path.lexists(path):
                        result.missing.append(f)
                        continue
                    if not is_safe_to_delete(path, app_id, self.paths) or (path.is_dir() and not path.is_symlink()):
                        log.warning("Skipping unsafe path %s", path)
                        result.skipped.append(f)
                        continue
                    path.unlink()
                    result.removed.append(f)
                if root.exists():
                    if is_safe_to_delete(root, app_id, self.paths):
                        shutil.rmtree(root)
                    else:
                        log.warning("Skipping unsafe install root %s", root)
                        result.skipped.append(str(root))
            except OSError as e:
                raise InstallError(InstallReason.IO_ERROR, f"Uninstall of {app_id} failed: {e}") from e
            self.registry.remove(app_id)
        log.info("Uninstalled %s %s (%d files removed)", app_id, record.version, len(result.removed))
        return result

    # -- queries ---------------------------------------------------------

    def detect_state(self, meta: PackageMetadata) -> PackageState:
        record = self.registry.get(meta.app_id)
        if record is None:
            return PackageState.FRESH
        if not all(os.path.lexists(f) for f in record.files):
            return PackageState.CORRUPTED
        try:
            installed = version_key(record.version)
        except ValueError:
            return PackageState.CORRUPTED
        incoming = version_key(meta.version)
        if incoming > installed:
            return PackageState.UPGRADEABLE
        if incoming < installed:
            return PackageState.DOWNGRADE
        return PackageState.INSTALLED


# ---------------------------------------------------------------------------
# Module-level operations
# ---------------------------------------------------------------------------

def install(
    container_path: str | Path | None,
    scope: Scope | str = Scope.USER,
    **kwargs,
) -> InstalledPackageRecord:
    return Installer(ScopePaths.for_scope(scope), **kwargs).install(container_path)


def uninstall(app_id: str, scope: Scope | str = Scope.USER) -> UninstallResult:
    return Installer(ScopePaths.for_scope(scope)).uninstall(app_id)


def verify(container_path: str | Path, public_key: bytes) -> bool:
    """True iff the payload is intact and signed by ``public_key``."""
    with locate(container_path) as reader:
        try:
            check_checksum(reader)
        except InstallError as e:
            if e.reason is InstallReason.CHECKSUM_MISMATCH:
                return False
            raise
        sig = reader.metadata.signature
        if sig is None:
            return False
        return verify_signature(public_key, sig, reader.checksum, reader.metadata.signable_bytes())


def detect_state(meta: PackageMetadata, scope: Scope | str = Scope.USER) -> PackageState:
    return Installer(ScopePaths.for_scope(scope)).detect_state(meta)
