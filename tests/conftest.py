"""Shared fixtures: a staged app tree, its metadata and sandboxed install roots."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from lxe.metadata import PackageMetadata
from lxe.packer import build
from lxe.paths import Scope, ScopePaths
from lxe.signing import generate_keypair

APP_ID = "com.example.Demo"


def make_tree(root: Path, version: str = "1.0.0", extra: dict[str, str] | None = None) -> Path:
    """Staged tree: bin/demo (exec), bin/run -> demo, lib/data.txt, share/icon.png."""
    (root / "bin").mkdir(parents=True)
    (root / "lib").mkdir()
    (root / "share").mkdir()
    exe = root / "bin" / "demo"
    exe.write_text(f"#!/bin/sh\necho demo {version}\n")
    exe.chmod(0o755)
    os.symlink("demo", root / "bin" / "run")
    (root / "lib" / "data.txt").write_text(f"data for {version}\n")
    (root / "share" / "icon.png").write_bytes(b"\x89PNG\r\n\x1a\n" + bytes(range(64)))
    for rel, content in (extra or {}).items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content)
    return root


def make_metadata(version: str = "1.0.0", **kwargs) -> PackageMetadata:
    fields = dict(
        app_id=APP_ID,
        name="Demo",
        version=version,
        executable="bin/demo",
        icon="share/icon.png",
        description="A demo application",
        categories=frozenset({"Utility", "Development"}),
        arch="x86_64",
    )
    fields.update(kwargs)
    return PackageMetadata(**fields)


@pytest.fixture
def app_tree(tmp_path):
    return make_tree(tmp_path / "staged")


@pytest.fixture
def metadata():
    return make_metadata()


@pytest.fixture
def keypair():
    return generate_keypair()


@pytest.fixture
def scope_paths(tmp_path):
    return ScopePaths(
        scope=Scope.USER,
        data_home=tmp_path / "home" / "share",
        config_home=tmp_path / "home" / "config",
        bin_dir=tmp_path / "home" / "bin",
    )


@pytest.fixture
def build_package(tmp_path):
    """Factory: build a container for a given version, return its path."""
    counter = {"n": 0}

    def _build(version="1.0.0", signing_key=None, stub=b"#!/bin/sh\nexit 0\n", extra=None, **meta_kwargs):
        counter["n"] += 1
        tree = make_tree(tmp_path / f"tree-{counter['n']}", version, extra)
        out = tmp_path / f"demo-{version}-{counter['n']}.lxe"
        build(tree, make_metadata(version, **meta_kwargs), stub, out, signing_key=signing_key)
        return out

    return _build
