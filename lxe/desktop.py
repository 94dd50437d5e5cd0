"""Desktop integration: freedesktop entry text and icon naming."""

from __future__ import annotations

from pathlib import Path, PurePosixPath

from lxe.metadata import PackageMetadata
from lxe.paths import ScopePaths


def _escape(value: str) -> str:
    # Desktop Entry string escapes; newlines would start a new key
    return (
        value.replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def _quote_exec(path: str) -> str:
    if any(c in path for c in ' \t"\'\\><~|&;$*?#()`'):
        escaped = path.replace("\\", "\\\\").replace('"', '\\"').replace("`", "\\`").replace("$", "\\$")
        return f'"{escaped}"'
    return path


def wm_class(meta: PackageMetadata) -> str:
    return meta.app_id.rsplit(".", 1)[-1]


def icon_target(meta: PackageMetadata, paths: ScopePaths) -> Path | None:
    """Where the package icon is installed in the hicolor theme, or None."""
    if meta.icon is None:
        return None
    scalable = PurePosixPath(meta.icon).suffix.lower() == ".svg"
    ext = "svg" if scalable else "png"
    return paths.icon_dir(scalable) / f"{meta.app_id}.{ext}"


def render_desktop_entry(
    meta: PackageMetadata,
    install_root: Path,
    icon_path: Path | None = None,
    runtime_command: str | None = None,
) -> str:
    """Render the ``.desktop`` file for an installed package.

    ``runtime_command`` adds an "Uninstall" desktop action when given.
    """
    exec_path = _quote_exec(str(install_root / meta.executable))
    lines = [
        "[Desktop Entry]",
        "Type=Application",
        f"Name={_escape(meta.name)}",
        f"Comment={_escape(meta.description or meta.name)}",
        f"Exec={exec_path}",
        f"Icon={icon_path if icon_path is not None else meta.app_id}",
        f"Terminal={'true' if meta.terminal else 'false'}",
    ]
    if meta.categories:
        lines.append("Categories=" + "".join(f"{c};" for c in sorted(meta.categories)))
    lines += [
        f"StartupWMClass={wm_class(meta)}",
        f"X-LXE-Version={meta.version}",
        f"X-LXE-AppId={meta.app_id}",
    ]
    if runtime_command:
        lines += [
            "Actions=Uninstall;",
            "",
            "[Desktop Action Uninstall]",
            f"Name=Uninstall {_escape(meta.name)}",
            f"Exec={runtime_command} --uninstall {meta.app_id}",
        ]
    return "\n".join(lines) + "\n"
