"""
Self-extracting entry point, exec'd by the runtime stub.

    ./MyApp.lxe                     install into the user scope
    ./MyApp.lxe --system            install system-wide
    ./MyApp.lxe --uninstall APP_ID  remove an installed app
    ./MyApp.lxe --info              show package metadata

The container path comes from ``LXE_CONTAINER`` (set by the stub), the
frozen executable, or ``/proc/self/exe``, in that order.
"""

from __future__ import annotations

import argparse
import logging
import sys

from lxe import __version__
from lxe.cli import _add_scope_args, _add_trust_args, _fail, _scope, _setup_logging, _trusted_keys
from lxe.errors import LXEError
from lxe.installer import ExtractProgress, Installer, PackageState, locate_self, uninstall
from lxe.paths import ScopePaths

log = logging.getLogger(__name__)


def _print_progress(progress: ExtractProgress) -> None:
    print(f"\r  extracting {progress.fraction:6.1%}", end="", file=sys.stderr, flush=True)


def run_install(args: argparse.Namespace) -> None:
    paths = ScopePaths.for_scope(_scope(args))
    installer = Installer(
        paths,
        trusted_keys=_trusted_keys(args),
        require_signature=args.require_signature,
        on_progress=None if args.quiet else _print_progress,
        runtime_command="lxe",
    )
    with locate_self() as reader:
        meta = reader.metadata
        state = installer.detect_state(meta)
    if state is PackageState.INSTALLED and not args.force:
        print(f"{meta.name} {meta.version} is already installed. Use --force to reinstall.")
        return
    if state is PackageState.DOWNGRADE:
        log.warning("Installing %s %s over a newer version", meta.app_id, meta.version)

    print(f"Installing {meta.name} {meta.version} ({paths.scope.value})")
    record = installer.install(None)
    if not args.quiet:
        print(file=sys.stderr)
    print(f"Installed {record.app_id} {record.version} ({record.trust.value})")


def run_info() -> None:
    with locate_self() as reader:
        meta = reader.metadata
    print(f"{meta.name} ({meta.app_id}) {meta.version}")
    if meta.description:
        print(f"  {meta.description}")
    print(f"  signed: {meta.signature.key_id if meta.signature else 'no'}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="lxe-runtime", description="LXE self-extracting installer.")
    parser.add_argument("--version", action="version", version=f"lxe-runtime {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="No progress output")
    parser.add_argument("--uninstall", metavar="APP_ID", help="Remove an installed application")
    parser.add_argument("--info", action="store_true", help="Show package metadata and exit")
    parser.add_argument("--force", action="store_true", help="Reinstall the same version")
    parser.add_argument("--require-signature", action="store_true",
                        help="Refuse packages not signed by a trusted key")
    _add_scope_args(parser)
    _add_trust_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        if args.uninstall:
            result = uninstall(args.uninstall, _scope(args))
            print(f"Uninstalled {result.app_id} {result.version}")
        elif args.info:
            run_info()
        else:
            run_install(args)
    except LXEError as e:
        _fail(e)


if __name__ == "__main__":
    main()
