"""Tests for lxe.installer: verification, staging, transactional commit and uninstall."""

from __future__ import annotations

import dataclasses
import hashlib
import os
import stat

import pytest

from lxe._format import ContainerReader, write_container
from lxe.errors import InstallError, InstallReason, NotFound
from lxe.installer import (
    CancelToken,
    Installer,
    InstallState,
    PackageState,
    locate_self,
    verify,
)
from lxe.paths import Scope, ScopePaths
from lxe.registry import InstalledPackageRecord, Trust
from lxe.signing import generate_keypair, sign

from conftest import APP_ID, make_metadata


@pytest.fixture
def installer(scope_paths):
    return Installer(scope_paths)


def _flip_payload_byte(path) -> None:
    with ContainerReader.open(path) as reader:
        offset = reader.offsets.payload_offset + reader.offsets.payload_length // 2
    data = bytearray(path.read_bytes())
    data[offset] ^= 0xFF
    path.write_bytes(bytes(data))


def _fail_on_move(monkeypatch, n: int, exc: BaseException | None = None) -> None:
    """Make the n-th file move of the next commit raise."""
    real = Installer._move_file
    calls = {"n": 0}

    def flaky(self, src, dst):
        calls["n"] += 1
        if calls["n"] == n:
            raise exc or OSError(28, "No space left on device")
        return real(self, src, dst)

    monkeypatch.setattr(Installer, "_move_file", flaky)


def _assert_clean(paths) -> None:
    assert not paths.app_root(APP_ID).exists()
    assert not paths.desktop_path(APP_ID).exists()
    assert not os.path.lexists(paths.bin_dir / "demo")
    assert not (paths.icon_dir() / f"{APP_ID}.png").exists()
    if paths.namespace_dir.exists():
        assert list(paths.namespace_dir.iterdir()) == []


# ---------------------------------------------------------------------------
# Fresh install
# ---------------------------------------------------------------------------

class TestInstall:

    def test_installs_tree(self, installer, scope_paths, build_package):
        record = installer.install(build_package())
        root = scope_paths.app_root(APP_ID)

        assert installer.state is InstallState.COMMITTED
        assert record.version == "1.0.0"
        assert record.install_root == str(root)
        assert stat.S_IMODE(os.stat(root / "bin" / "demo").st_mode) == 0o755
        assert os.readlink(root / "bin" / "run") == "demo"
        assert (root / "lib" / "data.txt").read_text() == "data for 1.0.0\n"

    def test_desktop_icon_and_launcher(self, installer, scope_paths, build_package):
        record = installer.install(build_package())
        root = scope_paths.app_root(APP_ID)

        desktop = scope_paths.desktop_path(APP_ID)
        text = desktop.read_text()
        assert "Name=Demo" in text
        assert f"Exec={root / 'bin' / 'demo'}" in text
        assert "Categories=Development;Utility;" in text

        icon = scope_paths.icon_dir() / f"{APP_ID}.png"
        assert icon.read_bytes() == (root / "share" / "icon.png").read_bytes()
        assert f"Icon={icon}" in text

        link = scope_paths.bin_dir / "demo"
        assert os.readlink(link) == str(root / "bin" / "demo")

        for path in (desktop, icon, link, root / "bin" / "demo"):
            assert str(path) in record.files

    def test_record_persisted(self, installer, build_package):
        installer.install(build_package())
        record = installer.registry.get(APP_ID)
        assert record.name == "Demo"
        assert record.scope == "user"
        assert record.executable == "bin/demo"
        assert record.trust is Trust.UNSIGNED

    def test_no_staging_left_behind(self, installer, scope_paths, build_package):
        installer.install(build_package())
        assert [p.name for p in scope_paths.namespace_dir.iterdir()] == [APP_ID]

    def test_existing_launcher_not_clobbered(self, installer, scope_paths, build_package):
        scope_paths.bin_dir.mkdir(parents=True)
        foreign = scope_paths.bin_dir / "demo"
        foreign.write_text("someone else's")
        record = installer.install(build_package())
        assert foreign.read_text() == "someone else's"
        assert str(foreign) not in record.files

    def test_without_launcher(self, scope_paths, build_package):
        Installer(scope_paths, link_bin=False).install(build_package())
        assert not os.path.lexists(scope_paths.bin_dir / "demo")

    def test_uninstall_action(self, scope_paths, build_package):
        Installer(scope_paths, runtime_command="lxe").install(build_package())
        text = scope_paths.desktop_path(APP_ID).read_text()
        assert f"Exec=lxe --uninstall {APP_ID}" in text

    def test_svg_icon_goes_to_scalable(self, installer, scope_paths, build_package):
        path = build_package(extra={"share/icon.svg": "<svg/>"}, icon="share/icon.svg")
        installer.install(path)
        assert (scope_paths.icon_dir(scalable=True) / f"{APP_ID}.svg").read_text() == "<svg/>"

    def test_progress(self, scope_paths, build_package):
        seen = []
        Installer(scope_paths, on_progress=seen.append).install(build_package())
        assert seen
        done = [p.extracted_bytes for p in seen]
        assert done == sorted(done)
        assert all(0.0 <= p.fraction <= 1.0 for p in seen)
        assert seen[-1].total_bytes > 0
        assert {p.current_file for p in seen} >= {"bin/demo", "lib/data.txt", "share/icon.png"}

    def test_system_scope_needs_root(self, tmp_path, build_package, monkeypatch):
        monkeypatch.setattr(os, "geteuid", lambda: 1000)
        paths = ScopePaths(
            scope=Scope.SYSTEM,
            data_home=tmp_path / "opt",
            config_home=tmp_path / "etc",
            bin_dir=tmp_path / "usr-bin",
        )
        installer = Installer(paths)
        with pytest.raises(InstallError) as exc:
            installer.install(build_package())
        assert exc.value.reason is InstallReason.IO_ERROR
        assert "needs root" in str(exc.value)
        assert installer.state is InstallState.FAILED
        assert not (tmp_path / "opt").exists()
        assert not (tmp_path / "etc").exists()

        with pytest.raises(InstallError, match="needs root"):
            installer.uninstall(APP_ID)

    def test_system_scope_as_root(self, tmp_path, build_package, monkeypatch):
        monkeypatch.setattr(os, "geteuid", lambda: 0)
        paths = ScopePaths(
            scope=Scope.SYSTEM,
            data_home=tmp_path / "opt",
            config_home=tmp_path / "etc",
            bin_dir=tmp_path / "usr-bin",
        )
        record = Installer(paths).install(build_package())
        assert record.app_id == APP_ID
        assert paths.app_root(APP_ID).is_dir()


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class TestVerification:

    def test_not_a_container(self, installer, tmp_path):
        bogus = tmp_path / "bogus.lxe"
        bogus.write_bytes(b"#!/bin/sh\necho hi\n" * 10)
        with pytest.raises(InstallError) as exc:
            installer.install(bogus)
        assert exc.value.reason is InstallReason.FORMAT
        assert exc.value.exit_code == 2
        assert installer.state is InstallState.FAILED

    def test_missing_file(self, installer, tmp_path):
        with pytest.raises(InstallError) as exc:
            installer.install(tmp_path / "nope.lxe")
        assert exc.value.reason is InstallReason.IO_ERROR

    def test_flipped_payload_byte(self, installer, scope_paths, build_package):
        path = build_package()
        _flip_payload_byte(path)
        with pytest.raises(InstallError) as exc:
            installer.install(path)
        assert exc.value.reason is InstallReason.CHECKSUM_MISMATCH
        assert exc.value.exit_code == 3
        assert installer.failure is InstallReason.CHECKSUM_MISMATCH
        _assert_clean(scope_paths)

    def test_signed_by_trusted_key(self, scope_paths, build_package, keypair):
        path = build_package(signing_key=keypair)
        record = Installer(scope_paths, trusted_keys=[keypair.public_key]).install(path)
        assert record.trust is Trust.VERIFIED

    def test_signed_by_unknown_key(self, scope_paths, build_package, keypair):
        path = build_package(signing_key=keypair)
        record = Installer(scope_paths, trusted_keys=[generate_keypair().public_key]).install(path)
        assert record.trust is Trust.UNVERIFIED

    def test_tampered_signed_metadata(self, scope_paths, build_package, keypair):
        path = build_package(signing_key=keypair)
        data = path.read_bytes()
        assert data.count(b'"name":"Demo"') == 1
        path.write_bytes(data.replace(b'"name":"Demo"', b'"name":"Demx"'))
        with pytest.raises(InstallError) as exc:
            Installer(scope_paths, trusted_keys=[keypair.public_key]).install(path)
        assert exc.value.reason is InstallReason.SIGNATURE_INVALID
        assert exc.value.exit_code == 4
        _assert_clean(scope_paths)

    def test_resigned_after_edit(self, scope_paths, build_package, keypair):
        path = build_package(signing_key=keypair)
        with ContainerReader.open(path) as reader:
            meta = reader.metadata
            stub = path.read_bytes()[:reader.offsets.stub_length]
            payload = reader.payload_stream().read()
            checksum = reader.checksum
        edited = dataclasses.replace(meta, description="Edited after release", signature=None)

        stale = path.with_name("stale.lxe")
        stale.write_bytes(write_container(stub, edited.with_signature(meta.signature), checksum, payload))
        assert not verify(stale, keypair.public_key)

        resigned = edited.with_signature(sign(keypair, checksum, edited.signable_bytes()))
        fresh = path.with_name("resigned.lxe")
        fresh.write_bytes(write_container(stub, resigned, checksum, payload))
        assert verify(fresh, keypair.public_key)
        record = Installer(scope_paths, trusted_keys=[keypair.public_key], require_signature=True).install(fresh)
        assert record.trust is Trust.VERIFIED

    def test_require_signature_rejects_unsigned(self, scope_paths, build_package):
        with pytest.raises(InstallError) as exc:
            Installer(scope_paths, require_signature=True).install(build_package())
        assert exc.value.reason is InstallReason.SIGNATURE_INVALID

    def test_require_signature_rejects_unknown_signer(self, scope_paths, build_package, keypair):
        with pytest.raises(InstallError):
            Installer(scope_paths, require_signature=True).install(build_package(signing_key=keypair))

    def test_corrupt_payload_with_consistent_checksum(self, installer, scope_paths, tmp_path):
        garbage = b"this is not zstd" * 64
        digest = hashlib.sha256(garbage).digest()
        meta = make_metadata().with_payload(
            install_size=4096, payload_size=len(garbage), payload_checksum=digest.hex(),
        )
        path = tmp_path / "corrupt.lxe"
        path.write_bytes(write_container(b"", meta, digest, garbage))
        with pytest.raises(InstallError) as exc:
            installer.install(path)
        assert exc.value.reason is InstallReason.CORRUPT_PAYLOAD
        assert exc.value.exit_code == 8
        _assert_clean(scope_paths)

    def test_payload_without_executable(self, installer, scope_paths, build_package):
        path = build_package()
        # Valid container whose metadata names a file the payload lacks
        with ContainerReader.open(path) as reader:
            meta = reader.metadata
            stub = path.read_bytes()[:reader.offsets.stub_length]
            payload = reader.payload_stream().read()
            checksum = reader.checksum
        bad = path.with_name("noexe.lxe")
        bad.write_bytes(write_container(stub, dataclasses.replace(meta, executable="bin/gone"), checksum, payload))
        with pytest.raises(InstallError) as exc:
            installer.install(bad)
        assert exc.value.reason is InstallReason.CORRUPT_PAYLOAD
        _assert_clean(scope_paths)


class TestModuleVerify:

    def test_valid(self, build_package, keypair):
        assert verify(build_package(signing_key=keypair), keypair.public_key)

    def test_wrong_key(self, build_package, keypair):
        assert not verify(build_package(signing_key=keypair), generate_keypair().public_key)

    def test_unsigned(self, build_package, keypair):
        assert not verify(build_package(), keypair.public_key)

    def test_flipped_payload(self, build_package, keypair):
        path = build_package(signing_key=keypair)
        _flip_payload_byte(path)
        assert not verify(path, keypair.public_key)

    def test_not_a_container(self, tmp_path, keypair):
        bogus = tmp_path / "bogus"
        bogus.write_bytes(b"\x00" * 10)
        with pytest.raises(InstallError) as exc:
            verify(bogus, keypair.public_key)
        assert exc.value.reason is InstallReason.FORMAT


# ---------------------------------------------------------------------------
# Transactional commit
# ---------------------------------------------------------------------------

class TestRollback:

    @pytest.mark.parametrize("fail_at", [1, 2, 4])
    def test_failure_leaves_nothing(self, installer, scope_paths, build_package, monkeypatch, fail_at):
        path = build_package()
        _fail_on_move(monkeypatch, fail_at)
        with pytest.raises(InstallError) as exc:
            installer.install(path)
        assert exc.value.reason is InstallReason.PARTIAL_COMMIT
        assert exc.value.exit_code == 5
        assert installer.state is InstallState.FAILED
        assert installer.registry.get(APP_ID) is None
        _assert_clean(scope_paths)

    def test_failed_upgrade_keeps_previous(self, installer, scope_paths, build_package, monkeypatch):
        installer.install(build_package("1.0.0"))
        v2 = build_package("2.0.0")
        _fail_on_move(monkeypatch, 3)
        with pytest.raises(InstallError):
            installer.install(v2)

        root = scope_paths.app_root(APP_ID)
        assert (root / "lib" / "data.txt").read_text() == "data for 1.0.0\n"
        assert (root / "bin" / "demo").read_text() == "#!/bin/sh\necho demo 1.0.0\n"
        assert "X-LXE-Version=1.0.0" in scope_paths.desktop_path(APP_ID).read_text()
        assert os.readlink(scope_paths.bin_dir / "demo") == str(root / "bin" / "demo")
        assert (scope_paths.icon_dir() / f"{APP_ID}.png").exists()
        assert installer.registry.get(APP_ID).version == "1.0.0"
        assert [p.name for p in scope_paths.namespace_dir.iterdir()] == [APP_ID]

    def test_registry_failure_rolls_back(self, installer, scope_paths, build_package, monkeypatch):
        def broken_put(record):
            raise OSError(13, "Permission denied")

        monkeypatch.setattr(installer.registry, "put", broken_put)
        with pytest.raises(InstallError) as exc:
            installer.install(build_package())
        assert exc.value.reason is InstallReason.PARTIAL_COMMIT
        _assert_clean(scope_paths)


class TestUpgrade:

    def test_v1_then_v2(self, installer, scope_paths, build_package):
        installer.install(build_package("1.0.0"))
        record = installer.install(build_package("2.0.0"))
        root = scope_paths.app_root(APP_ID)
        assert record.version == "2.0.0"
        assert (root / "lib" / "data.txt").read_text() == "data for 2.0.0\n"
        assert "X-LXE-Version=2.0.0" in scope_paths.desktop_path(APP_ID).read_text()
        assert [r.version for r in installer.registry.list()] == ["2.0.0"]
        assert [p.name for p in scope_paths.namespace_dir.iterdir()] == [APP_ID]

    def test_files_dropped_by_new_version_are_gone(self, installer, scope_paths, build_package):
        installer.install(build_package("1.0.0", extra={"lib/old.txt": "legacy"}))
        installer.install(build_package("2.0.0"))
        assert not (scope_paths.app_root(APP_ID) / "lib" / "old.txt").exists()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:

    def test_cancelled_before_start(self, scope_paths, build_package):
        token = CancelToken()
        token.cancel()
        installer = Installer(scope_paths, cancel=token)
        with pytest.raises(InstallError) as exc:
            installer.install(build_package())
        assert exc.value.reason is InstallReason.CANCELLED
        assert exc.value.exit_code == 9
        _assert_clean(scope_paths)

    def test_cancelled_during_extraction(self, scope_paths, build_package):
        token = CancelToken()
        installer = Installer(scope_paths, cancel=token, on_progress=lambda p: token.cancel())
        with pytest.raises(InstallError) as exc:
            installer.install(build_package())
        assert exc.value.reason is InstallReason.CANCELLED
        _assert_clean(scope_paths)

    def test_cancelled_during_commit(self, scope_paths, build_package, monkeypatch):
        token = CancelToken()
        real = Installer._move_file

        def move_then_cancel(self, src, dst):
            real(self, src, dst)
            token.cancel()

        monkeypatch.setattr(Installer, "_move_file", move_then_cancel)
        installer = Installer(scope_paths, cancel=token)
        with pytest.raises(InstallError) as exc:
            installer.install(build_package())
        assert exc.value.reason is InstallReason.CANCELLED
        assert installer.registry.get(APP_ID) is None
        _assert_clean(scope_paths)

    def test_cancel_after_commit_is_noop(self, scope_paths, build_package):
        token = CancelToken()
        installer = Installer(scope_paths, cancel=token)
        installer.install(build_package())
        token.cancel()
        assert installer.registry.get(APP_ID) is not None
        assert installer.state is InstallState.COMMITTED


# ---------------------------------------------------------------------------
# Uninstall
# ---------------------------------------------------------------------------

class TestUninstall:

    def test_removes_everything(self, installer, scope_paths, build_package):
        record = installer.install(build_package())
        result = installer.uninstall(APP_ID)
        assert sorted(result.removed) == sorted(record.files)
        assert result.missing == [] and result.skipped == []
        assert installer.registry.get(APP_ID) is None
        _assert_clean(scope_paths)

    def test_twice_is_not_found(self, installer, build_package):
        installer.install(build_package())
        installer.uninstall(APP_ID)
        with pytest.raises(NotFound) as exc:
            installer.uninstall(APP_ID)
        assert exc.value.exit_code == 6

    def test_tolerates_already_removed_files(self, installer, scope_paths, build_package):
        installer.install(build_package())
        desktop = scope_paths.desktop_path(APP_ID)
        desktop.unlink()
        result = installer.uninstall(APP_ID)
        assert result.missing == [str(desktop)]
        assert installer.registry.get(APP_ID) is None

    def test_skips_paths_outside_managed_roots(self, installer, scope_paths, tmp_path):
        victim = tmp_path / f"{APP_ID}-not-ours.txt"
        victim.write_text("keep me")
        installer.registry.put(InstalledPackageRecord(
            app_id=APP_ID,
            name="Demo",
            version="1.0.0",
            scope="user",
            install_root=str(tmp_path),
            files=[str(victim)],
        ))
        result = installer.uninstall(APP_ID)
        assert victim.read_text() == "keep me"
        assert str(victim) in result.skipped
        assert str(tmp_path) in result.skipped
        assert tmp_path.exists()

    def test_invalid_app_id(self, installer):
        with pytest.raises(ValueError):
            installer.uninstall("../../home")


# ---------------------------------------------------------------------------
# State detection and self-location
# ---------------------------------------------------------------------------

class TestDetectState:

    def test_states(self, installer, scope_paths, build_package):
        assert installer.detect_state(make_metadata("1.0.0")) is PackageState.FRESH
        installer.install(build_package("1.0.0"))
        assert installer.detect_state(make_metadata("1.0.0")) is PackageState.INSTALLED
        assert installer.detect_state(make_metadata("1.1.0")) is PackageState.UPGRADEABLE
        assert installer.detect_state(make_metadata("0.9.0")) is PackageState.DOWNGRADE
        (scope_paths.app_root(APP_ID) / "lib" / "data.txt").unlink()
        assert installer.detect_state(make_metadata("1.0.0")) is PackageState.CORRUPTED


class TestSelfLocation:

    def test_env_points_at_container(self, monkeypatch, build_package):
        path = build_package()
        monkeypatch.setenv("LXE_CONTAINER", str(path))
        with locate_self() as reader:
            assert reader.metadata.app_id == APP_ID

    def test_install_running_container(self, monkeypatch, installer, build_package):
        monkeypatch.setenv("LXE_CONTAINER", str(build_package()))
        record = installer.install()
        assert record.app_id == APP_ID
