"""
Package metadata embedded in every container.

Canonical form:
    json.dumps(sort_keys=True, separators=(",", ":"), ensure_ascii=False), UTF-8.
    Categories are serialized as a sorted list, absent optionals are omitted.

The signature covers the canonical form *without* the ``signature`` field,
so the signable bytes are identical before and after signing.
"""

from __future__ import annotations

import base64
import binascii
import json
import platform
import re
from dataclasses import dataclass, field, replace
from pathlib import PurePosixPath
from typing import Any

from lxe import SIGNATURE_ALGORITHM

# Reverse-DNS application id: at least two dot-separated labels, no path separators
_APP_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*(\.[A-Za-z0-9_-]+)+$")

# semver.org 2.0.0
_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

_CHECKSUM_RE = re.compile(r"^[0-9a-f]{64}$")

_REQUIRED_FIELDS = frozenset({
    "app_id", "name", "version", "executable", "arch",
    "install_size", "payload_size", "payload_checksum",
})
_OPTIONAL_FIELDS = frozenset({
    "icon", "description", "categories", "terminal", "signature",
})
_KNOWN_FIELDS = _REQUIRED_FIELDS | _OPTIONAL_FIELDS


def validate_app_id(app_id: str) -> None:
    """Raise ValueError unless app_id is a safe reverse-DNS identifier."""
    if not isinstance(app_id, str) or not _APP_ID_RE.match(app_id) or len(app_id) > 255:
        raise ValueError(f"Invalid app_id: must be reverse-DNS (e.g. com.example.App), got {app_id!r}")


def validate_version(version: str) -> None:
    if not isinstance(version, str) or not _SEMVER_RE.match(version):
        raise ValueError(f"Invalid version: must be semver (e.g. 1.2.3), got {version!r}")


def validate_relative_path(path: str, what: str) -> None:
    """Reject absolute paths, parent traversal and empty components."""
    if not isinstance(path, str) or not path or "\x00" in path:
        raise ValueError(f"Invalid {what} path: {path!r}")
    p = PurePosixPath(path)
    if p.is_absolute() or ".." in p.parts or str(p) in (".", ""):
        raise ValueError(f"Invalid {what} path (must be relative, no '..'): {path!r}")


def version_key(version: str) -> tuple:
    """Sort key implementing semver precedence (build metadata ignored)."""
    m = _SEMVER_RE.match(version)
    if not m:
        raise ValueError(f"Invalid version: {version!r}")
    core = (int(m.group(1)), int(m.group(2)), int(m.group(3)))
    pre = m.group(4)
    if pre is None:
        # A release sorts after all of its pre-releases
        return core + (1, ())
    idents = tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in pre.split(".")
    )
    return core + (0, idents)


def canonical_json(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass(frozen=True)
class Signature:
    """Detached Ed25519 signature plus the identifier of the signing key."""

    key_id: str
    value: bytes
    algorithm: str = SIGNATURE_ALGORITHM

    def to_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "key_id": self.key_id,
            "value": base64.b64encode(self.value).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, d: Any) -> Signature:
        if not isinstance(d, dict) or set(d) != {"algorithm", "key_id", "value"}:
            raise ValueError("signature must be an object with algorithm, key_id, value")
        if not all(isinstance(d[k], str) for k in d):
            raise ValueError("signature fields must be strings")
        try:
            value = base64.b64decode(d["value"].encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise ValueError(f"signature value is not valid base64: {e}") from e
        return cls(key_id=d["key_id"], value=value, algorithm=d["algorithm"])


@dataclass(frozen=True)
class PackageMetadata:
    """Immutable description of a packaged application.

    ``install_size``, ``payload_size`` and ``payload_checksum`` are filled in
    by the packer (see ``with_payload``); callers describe only the app.
    """

    app_id: str
    name: str
    version: str
    executable: str
    icon: str | None = None
    description: str = ""
    categories: frozenset[str] = frozenset()
    terminal: bool = False
    arch: str = field(default_factory=platform.machine)
    install_size: int = 0
    payload_size: int = 0
    payload_checksum: str = ""
    signature: Signature | None = None

    def __post_init__(self) -> None:
        validate_app_id(self.app_id)
        validate_version(self.version)
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("name must be a non-empty string")
        validate_relative_path(self.executable, "executable")
        if self.icon is not None:
            validate_relative_path(self.icon, "icon")
        if not isinstance(self.description, str):
            raise ValueError("description must be a string")
        if isinstance(self.categories, str):
            raise ValueError("categories must be a collection of strings, not a string")
        try:
            cats = frozenset(self.categories)
        except TypeError as e:
            raise ValueError(f"Invalid categories: {e}") from e
        if not all(isinstance(c, str) and c and ";" not in c for c in cats):
            raise ValueError(f"Invalid categories: {sorted(map(str, cats))!r}")
        object.__setattr__(self, "categories", cats)
        if not isinstance(self.terminal, bool):
            raise ValueError("terminal must be a boolean")
        for name in ("install_size", "payload_size"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer")
        if not isinstance(self.payload_checksum, str):
            raise ValueError(f"payload_checksum must be a string, got {self.payload_checksum!r}")
        if self.payload_checksum and not _CHECKSUM_RE.match(self.payload_checksum):
            raise ValueError(
                f"Invalid payload_checksum: must be 64 lowercase hex chars, got {self.payload_checksum!r}"
            )

    # -- serialization ---------------------------------------------------

    def to_dict(self, include_signature: bool = True) -> dict[str, Any]:
        d: dict[str, Any] = {
            "app_id": self.app_id,
            "name": self.name,
            "version": self.version,
            "executable": self.executable,
            "description": self.description,
            "categories": sorted(self.categories),
            "terminal": self.terminal,
            "arch": self.arch,
            "install_size": self.install_size,
            "payload_size": self.payload_size,
            "payload_checksum": self.payload_checksum,
        }
        if self.icon is not None:
            d["icon"] = self.icon
        if include_signature and self.signature is not None:
            d["signature"] = self.signature.to_dict()
        return d

    def to_json_bytes(self, include_signature: bool = True) -> bytes:
        """Canonical, deterministic UTF-8 JSON."""
        return canonical_json(self.to_dict(include_signature))

    def signable_bytes(self) -> bytes:
        return self.to_json_bytes(include_signature=False)

    @classmethod
    def from_dict(cls, d: Any) -> PackageMetadata:
        if not isinstance(d, dict):
            raise ValueError("metadata must be a JSON object")
        unknown = set(d) - _KNOWN_FIELDS
        if unknown:
            raise ValueError(f"Unknown metadata fields: {', '.join(sorted(unknown))}")
        missing = _REQUIRED_FIELDS - set(d)
        if missing:
            raise ValueError(f"Missing metadata fields: {', '.join(sorted(missing))}")
        categories = d.get("categories", [])
        if not isinstance(categories, list):
            raise ValueError("categories must be a list")
        signature = d.get("signature")
        return cls(
            app_id=d["app_id"],
            name=d["name"],
            version=d["version"],
            executable=d["executable"],
            icon=d.get("icon"),
            description=d.get("description", ""),
            categories=categories,
            terminal=d.get("terminal", False),
            arch=d["arch"],
            install_size=d["install_size"],
            payload_size=d["payload_size"],
            payload_checksum=d["payload_checksum"],
            signature=Signature.from_dict(signature) if signature is not None else None,
        )

    @classmethod
    def from_json_bytes(cls, data: bytes) -> PackageMetadata:
        """Parse metadata, rejecting anything that is not in canonical form."""
        try:
            obj = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"metadata is not valid UTF-8 JSON: {e}") from e
        meta = cls.from_dict(obj)
        if meta.to_json_bytes() != data:
            raise ValueError("metadata is not in canonical form")
        return meta

    # -- derivations -----------------------------------------------------

    def with_payload(self, install_size: int, payload_size: int, payload_checksum: str) -> PackageMetadata:
        """Return a copy describing a concrete payload. Drops any signature."""
        return replace(
            self,
            install_size=install_size,
            payload_size=payload_size,
            payload_checksum=payload_checksum,
            signature=None,
        )

    def with_signature(self, signature: Signature | None) -> PackageMetadata:
        return replace(self, signature=signature)

    @property
    def is_signed(self) -> bool:
        return self.signature is not None

    @property
    def desktop_filename(self) -> str:
        return f"{self.app_id}.desktop"

    @property
    def checksum_bytes(self) -> bytes:
        return bytes.fromhex(self.payload_checksum)
