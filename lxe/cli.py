"""
LXE CLI: build, install and manage self-extracting Linux packages.

Commands:
  lxe build         - Build a .lxe package from lxe.toml
  lxe install       - Install a .lxe package
  lxe uninstall     - Remove an installed package
  lxe verify        - Check a package's checksum and signature
  lxe inspect       - Show a package's metadata
  lxe list          - List installed packages
  lxe key generate  - Create an Ed25519 signing keypair
  lxe self-update   - Replace this binary from a signed update package
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from lxe import EXIT_OK, EXIT_SIGNATURE, EXIT_USAGE, __version__
from lxe.errors import LXEError


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def _add_scope_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--system", action="store_true", help="System-wide scope (needs root)")


def _add_trust_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--trusted-key", action="append", default=[], metavar="KEY",
        help="Trusted public key file or base64 (repeatable; also LXE_TRUSTED_KEYS)",
    )


def _scope(args: argparse.Namespace):
    from lxe.paths import Scope
    return Scope.SYSTEM if getattr(args, "system", False) else Scope.USER


def _trusted_keys(args: argparse.Namespace) -> list[bytes]:
    from lxe.config import trusted_key_sources
    from lxe.signing import load_public_key

    keys = []
    for source in trusted_key_sources(getattr(args, "trusted_key", [])):
        try:
            keys.append(load_public_key(source))
        except (OSError, ValueError) as e:
            print(f"Error: Cannot load trusted key {source!r}: {e}", file=sys.stderr)
            sys.exit(EXIT_USAGE)
    return keys


def _fail(e: LXEError) -> None:
    print(f"Error: {e.kind}: {e.reason.value}: {e}", file=sys.stderr)
    sys.exit(e.exit_code)


def cmd_build(args: argparse.Namespace) -> None:
    """Build a package from lxe.toml."""
    from lxe.config import load_config
    from lxe.errors import BuildError, BuildReason
    from lxe.packer import build_from_config

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_USAGE)
    except ValueError as e:
        raise BuildError(BuildReason.INVALID_METADATA, str(e)) from e
    if args.output:
        config.output_path = Path(args.output)
    if args.key:
        config.key_path = Path(args.key)

    result = build_from_config(config, run_script=not args.no_script)
    print(f"Built {result.path}")
    print(f"  app:      {result.metadata.app_id} {result.metadata.version}")
    print(f"  payload:  {result.payload_size} bytes (installs {result.install_size})")
    print(f"  checksum: {result.checksum}")
    print(f"  signed:   {'yes' if result.signed else 'no'}")


def cmd_install(args: argparse.Namespace) -> None:
    """Install a package into the user or system scope."""
    from lxe.installer import Installer
    from lxe.paths import ScopePaths

    installer = Installer(
        ScopePaths.for_scope(_scope(args)),
        trusted_keys=_trusted_keys(args),
        require_signature=args.require_signature,
        link_bin=not args.no_bin_link,
    )
    record = installer.install(args.path)
    print(f"Installed {record.app_id} {record.version} ({record.trust.value})")
    print(f"  root: {record.install_root}")


def cmd_uninstall(args: argparse.Namespace) -> None:
    """Remove an installed package."""
    from lxe.installer import uninstall

    try:
        result = uninstall(args.app_id, _scope(args))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_USAGE)
    print(f"Uninstalled {result.app_id} {result.version} ({len(result.removed)} files removed)")
    for path in result.skipped:
        print(f"  skipped (unsafe): {path}")


def cmd_verify(args: argparse.Namespace) -> None:
    """Verify a package against a public key."""
    from lxe.installer import verify
    from lxe.signing import load_public_key

    try:
        public_key = load_public_key(args.key)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_USAGE)
    if verify(args.path, public_key):
        print(f"OK: {args.path} is intact and signed by this key")
        return
    print(f"FAILED: {args.path} is corrupt, unsigned or signed by another key", file=sys.stderr)
    sys.exit(EXIT_SIGNATURE)


def cmd_inspect(args: argparse.Namespace) -> None:
    """Show a package's metadata without installing it."""
    from lxe.installer import locate

    with locate(args.path) as reader:
        meta = reader.metadata
        if args.json:
            print(json.dumps(meta.to_dict(), indent=2, sort_keys=True))
            return
        print(f"{meta.name} ({meta.app_id})")
        print(f"  version:     {meta.version}")
        print(f"  arch:        {meta.arch}")
        print(f"  executable:  {meta.executable}")
        if meta.icon:
            print(f"  icon:        {meta.icon}")
        if meta.categories:
            print(f"  categories:  {', '.join(sorted(meta.categories))}")
        print(f"  payload:     {meta.payload_size} bytes (installs {meta.install_size})")
        print(f"  checksum:    {meta.payload_checksum}")
        print(f"  signed by:   {meta.signature.key_id if meta.signature else '-'}")
        print(f"  stub:        {reader.offsets.stub_length} bytes")


def cmd_list(args: argparse.Namespace) -> None:
    """List installed packages."""
    from lxe.paths import ScopePaths
    from lxe.registry import Registry

    paths = ScopePaths.for_scope(_scope(args))
    records = Registry(paths.registry_path, paths.locks_dir).list()
    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2, sort_keys=True))
        return
    if not records:
        print("No packages installed.")
        return
    print(f"{len(records)} package(s) installed ({paths.scope.value}):\n")
    for r in records:
        print(f"  {r.app_id:<40} {r.version:<12} {r.trust.value:<10} {r.installed_at[:19]}")


def cmd_key_generate(args: argparse.Namespace) -> None:
    """Create a keypair: private key at PATH, public key at PATH.pub."""
    from lxe.signing import generate_keypair, save_keypair, save_public_key

    out = Path(args.output)
    pub_path = out.with_name(out.name + ".pub")
    if out.exists() or pub_path.exists():
        print(f"Error: Refusing to overwrite {out} or {pub_path}", file=sys.stderr)
        sys.exit(EXIT_USAGE)
    pair = generate_keypair()
    save_keypair(pair, out)
    save_public_key(pair.public_key, pub_path)
    print(f"Private key: {out} (keep secret)")
    print(f"Public key:  {pub_path}")
    print(f"Key id:      {pair.key_id}")


def cmd_self_update(args: argparse.Namespace) -> None:
    """Replace the lxe binary from a verified update package."""
    from lxe.selfupdate import self_update

    result = self_update(
        args.path,
        target=args.target,
        trusted_keys=_trusted_keys(args),
        require_signature=not args.allow_unsigned,
    )
    print(f"Updated {result.target} -> {result.version}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lxe",
        description="LXE: universal self-extracting Linux application packages.",
    )
    parser.add_argument("--version", action="version", version=f"lxe {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    p_build = sub.add_parser("build", help="Build a package from lxe.toml")
    p_build.add_argument("-c", "--config", help="Path to lxe.toml (default: ./lxe.toml)")
    p_build.add_argument("-o", "--output", help="Output file (overrides [build] output)")
    p_build.add_argument("--key", help="Private key file (overrides [security] key)")
    p_build.add_argument("--no-script", action="store_true", help="Skip the [build] script")

    p_install = sub.add_parser("install", help="Install a package")
    p_install.add_argument("path", help="Path to .lxe file")
    _add_scope_args(p_install)
    _add_trust_args(p_install)
    p_install.add_argument("--require-signature", action="store_true",
                           help="Refuse packages not signed by a trusted key")
    p_install.add_argument("--no-bin-link", action="store_true", help="Do not create a launcher symlink")

    p_uninstall = sub.add_parser("uninstall", help="Remove an installed package")
    p_uninstall.add_argument("app_id", help="Application id (e.g. com.example.App)")
    _add_scope_args(p_uninstall)

    p_verify = sub.add_parser("verify", help="Verify checksum and signature")
    p_verify.add_argument("path", help="Path to .lxe file")
    p_verify.add_argument("-k", "--key", required=True, help="Public key file or base64")

    p_inspect = sub.add_parser("inspect", help="Show package metadata")
    p_inspect.add_argument("path", help="Path to .lxe file")
    p_inspect.add_argument("--json", action="store_true", help="Raw metadata as JSON")

    p_list = sub.add_parser("list", help="List installed packages")
    _add_scope_args(p_list)
    p_list.add_argument("--json", action="store_true", help="Output JSON")

    p_key = sub.add_parser("key", help="Signing key management")
    key_sub = p_key.add_subparsers(dest="key_command")
    p_kg = key_sub.add_parser("generate", help="Generate an Ed25519 keypair")
    p_kg.add_argument("-o", "--output", default="lxe-signing.key", help="Private key path")

    p_su = sub.add_parser("self-update", help="Update this binary from a package")
    p_su.add_argument("path", help="Update .lxe file")
    p_su.add_argument("--target", help="Binary to replace (default: this one)")
    p_su.add_argument("--allow-unsigned", action="store_true", help="Accept updates without a trusted signature")
    _add_trust_args(p_su)
    return parser


_COMMANDS = {
    "build": cmd_build,
    "install": cmd_install,
    "uninstall": cmd_uninstall,
    "verify": cmd_verify,
    "inspect": cmd_inspect,
    "list": cmd_list,
    "self-update": cmd_self_update,
}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_OK)

    if args.command == "key":
        if getattr(args, "key_command", None) != "generate":
            print("Usage: lxe key generate [-o PATH]")
            sys.exit(EXIT_USAGE)
        handler = cmd_key_generate
    else:
        handler = _COMMANDS[args.command]

    try:
        handler(args)
    except LXEError as e:
        _fail(e)


if __name__ == "__main__":
    main()
