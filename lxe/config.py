"""
Declarative build configuration (``lxe.toml``) and environment settings.

    [package]
    name = "My App"
    id = "com.example.MyApp"
    version = "1.0.0"
    executable = "bin/myapp"
    icon = "share/myapp.png"        # optional
    description = "..."             # optional
    categories = ["Utility"]        # optional
    terminal = false                # optional

    [build]
    input = "./dist"                # default
    script = "make dist"            # optional, run before packaging
    compression = 19                # fixed; any other value is rejected
    output = "myapp.lxe"            # default: <last id label>.lxe

    [runtime]
    path = "./lxe-runtime"          # optional custom stub

    [security]
    key = "./signing.key"           # optional private key

Relative paths resolve against the directory holding the config file.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lxe import COMPRESSION_LEVEL
from lxe.metadata import PackageMetadata

log = logging.getLogger(__name__)

CONFIG_FILENAME = "lxe.toml"

DEFAULT_BUILD = {
    "input": "./dist",
    "script": None,
    "compression": COMPRESSION_LEVEL,
    "output": None,
}


@dataclass
class BuildConfig:
    """Parsed ``lxe.toml`` with paths resolved against ``base_dir``."""

    metadata: PackageMetadata
    base_dir: Path
    input_dir: Path
    output_path: Path
    script: str | None = None
    runtime_path: Path | None = None
    key_path: Path | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def _table(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ValueError(f"[{name}] must be a table")
    return value


def parse_config(data: dict[str, Any], base_dir: str | Path) -> BuildConfig:
    """Build a BuildConfig from already-parsed TOML. Raises ValueError."""
    base_dir = Path(base_dir)
    package = _table(data, "package")
    for key in ("name", "id", "version", "executable"):
        if key not in package:
            raise ValueError(f"[package] is missing required key {key!r}")

    build = dict(DEFAULT_BUILD)
    build.update(_table(data, "build"))
    if build["compression"] != COMPRESSION_LEVEL:
        raise ValueError(
            f"Compression level is fixed at {COMPRESSION_LEVEL}, got {build['compression']!r}"
        )

    metadata = PackageMetadata(
        app_id=package["id"],
        name=package["name"],
        version=package["version"],
        executable=package["executable"],
        icon=package.get("icon"),
        description=package.get("description", ""),
        categories=frozenset(package.get("categories", [])),
        terminal=package.get("terminal", False),
    )

    if build["output"]:
        output = base_dir / build["output"]
    else:
        output = base_dir / f"{metadata.app_id.rsplit('.', 1)[-1]}.lxe"

    runtime = _table(data, "runtime")
    security = _table(data, "security")
    return BuildConfig(
        metadata=metadata,
        base_dir=base_dir,
        input_dir=base_dir / build["input"],
        output_path=output,
        script=build["script"],
        runtime_path=base_dir / runtime["path"] if runtime.get("path") else None,
        key_path=base_dir / security["key"] if security.get("key") else None,
        raw=data,
    )


def load_config(path: str | Path | None = None) -> BuildConfig:
    """Load ``lxe.toml`` (default: in the current directory)."""
    path = Path(path) if path else Path.cwd() / CONFIG_FILENAME
    if not path.is_file():
        raise FileNotFoundError(f"No {CONFIG_FILENAME} found at {path}")
    with open(path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Failed to parse {path}: {e}") from e
    log.debug("Loaded build config from %s", path)
    return parse_config(data, path.resolve().parent)


def trusted_key_sources(extra: list[str] | None = None) -> list[str]:
    """Trusted public keys: explicit ones first, then ``LXE_TRUSTED_KEYS``.

    ``LXE_TRUSTED_KEYS`` is a colon-separated list of key files or inline
    base64 public keys.
    """
    sources = list(extra or [])
    env = os.environ.get("LXE_TRUSTED_KEYS", "")
    sources += [s for s in env.split(":") if s.strip()]
    return sources
