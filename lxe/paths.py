"""
Install locations per scope.

User scope follows the XDG base directories; system scope uses the FHS
locations. Every root can be overridden (tests point them at ``tmp_path``).

    <data_home>/<namespace>/<app_id>/           install root
    <data_home>/applications/<app_id>.desktop   desktop entry
    <data_home>/icons/hicolor/<size>/apps/      icons
    <config_home>/<namespace>/registry.json     uninstall registry
    <bin_dir>/<executable name>                 optional launcher symlink
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from lxe import (
    DEFAULT_NAMESPACE,
    ICON_SIZE_DIR,
    REGISTRY_FILENAME,
    SYSTEM_BIN_DIR,
    SYSTEM_CONFIG_HOME,
    SYSTEM_DATA_HOME,
)
from lxe.metadata import validate_app_id

# Never deleted, whatever a record claims
_PROTECTED = frozenset({"/", "/home", "/usr", "/usr/share", "/usr/local", "/etc", "/opt", "/var"})


class Scope(str, Enum):
    USER = "user"
    SYSTEM = "system"


def _env_path(name: str, default: Path) -> Path:
    value = os.environ.get(name)
    # XDG: relative values are invalid and must be ignored
    if value and os.path.isabs(value):
        return Path(value)
    return default


@dataclass(frozen=True)
class ScopePaths:
    """Resolved directories for one install scope."""

    scope: Scope
    data_home: Path
    config_home: Path
    bin_dir: Path
    namespace: str = DEFAULT_NAMESPACE

    @classmethod
    def for_scope(cls, scope: Scope | str = Scope.USER, namespace: str | None = None) -> ScopePaths:
        scope = Scope(scope)
        namespace = namespace or os.environ.get("LXE_NAMESPACE") or DEFAULT_NAMESPACE
        if scope is Scope.SYSTEM:
            return cls(
                scope=scope,
                data_home=Path(SYSTEM_DATA_HOME),
                config_home=Path(SYSTEM_CONFIG_HOME),
                bin_dir=Path(SYSTEM_BIN_DIR),
                namespace=namespace,
            )
        home = Path.home()
        config_home = _env_path("XDG_CONFIG_HOME", home / ".config")
        override = os.environ.get("LXE_CONFIG_HOME")
        if override:
            # LXE_CONFIG_HOME names the namespace directory itself
            config_home = Path(override).parent
            namespace_dir = Path(override).name
            namespace = namespace_dir or namespace
        return cls(
            scope=scope,
            data_home=_env_path("XDG_DATA_HOME", home / ".local" / "share"),
            config_home=config_home,
            bin_dir=home / ".local" / "bin",
            namespace=namespace,
        )

    @property
    def namespace_dir(self) -> Path:
        return self.data_home / self.namespace

    def app_root(self, app_id: str) -> Path:
        validate_app_id(app_id)
        return self.namespace_dir / app_id

    @property
    def applications_dir(self) -> Path:
        return self.data_home / "applications"

    @property
    def icons_dir(self) -> Path:
        return self.data_home / "icons" / "hicolor"

    def icon_dir(self, scalable: bool = False) -> Path:
        return self.icons_dir / ("scalable" if scalable else ICON_SIZE_DIR) / "apps"

    def desktop_path(self, app_id: str) -> Path:
        validate_app_id(app_id)
        return self.applications_dir / f"{app_id}.desktop"

    @property
    def config_dir(self) -> Path:
        return self.config_home / self.namespace

    @property
    def registry_path(self) -> Path:
        return self.config_dir / REGISTRY_FILENAME

    @property
    def locks_dir(self) -> Path:
        return self.config_dir / "locks"

    @property
    def managed_roots(self) -> tuple[Path, ...]:
        return (self.data_home, self.bin_dir)


def is_safe_to_delete(path: str | Path, app_id: str, paths: ScopePaths) -> bool:
    """Guard against deleting anything an installer could not have created.

    The path (or, for a launcher symlink, its target) must name the app, sit
    strictly inside one of the scope's managed roots and must not be a
    well-known system directory.
    """
    p = Path(os.path.normpath(os.path.abspath(path)))
    if str(p) in _PROTECTED or p == Path.home():
        return False
    named = app_id in str(p)
    if not named and p.is_symlink():
        named = app_id in os.readlink(p)
    if not named:
        return False
    for root in paths.managed_roots:
        root = Path(os.path.normpath(os.path.abspath(root)))
        if p != root and root in p.parents:
            return True
    return False
