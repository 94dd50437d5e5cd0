"""
Ed25519 package signatures.

- What is signed: payload checksum (32 raw bytes) || canonical metadata JSON
  without the ``signature`` field. Verification cost is independent of the
  payload size.
- Key id: "ed25519:" + base64(sha256(public_key_raw)).
- Key files: private = base64(seed[32] + public[32]), mode 0600;
  public = base64(public[32]).

Trust policy (absent vs. invalid signature) lives in the installer, not here.
``verify`` is pure and returns False for anything it cannot validate.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from lxe import CHECKSUM_SIZE, PUBLIC_KEY_SIZE, SIGNATURE_ALGORITHM, SIGNATURE_SIZE
from lxe.metadata import Signature

_SEED_SIZE = 32


@dataclass(frozen=True)
class KeyPair:
    """Raw Ed25519 key material.

    Attributes:
        public_key: 32-byte raw public key (distributed out-of-band).
        private_key: 32-byte private seed (never embedded in a container).
    """

    public_key: bytes
    private_key: bytes

    @property
    def key_id(self) -> str:
        return key_id(self.public_key)

    def __repr__(self) -> str:
        return f"KeyPair(key_id={self.key_id!r})"


def _public_bytes_raw(pub: Ed25519PublicKey) -> bytes:
    return pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def key_id(public_key: bytes) -> str:
    """Stable identifier for a public key."""
    digest = hashlib.sha256(public_key).digest()
    return f"{SIGNATURE_ALGORITHM}:" + base64.b64encode(digest).decode("ascii")


def generate_keypair() -> KeyPair:
    """Generate a keypair from the OS CSPRNG."""
    priv = Ed25519PrivateKey.generate()
    seed = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return KeyPair(public_key=_public_bytes_raw(priv.public_key()), private_key=seed)


def keypair_from_seed(seed: bytes) -> KeyPair:
    if len(seed) != _SEED_SIZE:
        raise ValueError(f"Ed25519 private seed must be {_SEED_SIZE} bytes")
    priv = Ed25519PrivateKey.from_private_bytes(seed)
    return KeyPair(public_key=_public_bytes_raw(priv.public_key()), private_key=bytes(seed))


def signed_message(payload_checksum: bytes, metadata_bytes: bytes) -> bytes:
    if len(payload_checksum) != CHECKSUM_SIZE:
        raise ValueError(f"Payload checksum must be {CHECKSUM_SIZE} bytes")
    return payload_checksum + metadata_bytes


def sign(private_key: bytes | KeyPair, payload_checksum: bytes, metadata_bytes: bytes) -> Signature:
    """Sign checksum || metadata.

    Args:
        private_key: 32-byte seed, or a KeyPair.
        payload_checksum: raw SHA-256 of the compressed payload.
        metadata_bytes: canonical metadata without the signature field.
    """
    pair = private_key if isinstance(private_key, KeyPair) else keypair_from_seed(private_key)
    priv = Ed25519PrivateKey.from_private_bytes(pair.private_key)
    value = priv.sign(signed_message(payload_checksum, metadata_bytes))
    return Signature(key_id=pair.key_id, value=value, algorithm=SIGNATURE_ALGORITHM)


def verify(public_key: bytes, signature: Signature, payload_checksum: bytes, metadata_bytes: bytes) -> bool:
    """Check a signature. Side-effect free; never raises on bad input."""
    if signature.algorithm != SIGNATURE_ALGORITHM:
        return False
    if len(public_key) != PUBLIC_KEY_SIZE or len(signature.value) != SIGNATURE_SIZE:
        return False
    if len(payload_checksum) != CHECKSUM_SIZE:
        return False
    if signature.key_id != key_id(public_key):
        return False
    try:
        pub = Ed25519PublicKey.from_public_bytes(public_key)
        pub.verify(signature.value, payload_checksum + metadata_bytes)
    except (InvalidSignature, ValueError):
        return False
    return True


# ---------------------------------------------------------------------------
# Key files
# ---------------------------------------------------------------------------

def _b64decode(text: str, what: str) -> bytes:
    try:
        return base64.b64decode(text.strip().encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64 in {what}") from e


def save_keypair(pair: KeyPair, path: str | Path) -> None:
    """Write the private key file with 0600 permissions. Refuses to overwrite."""
    path = Path(path)
    encoded = base64.b64encode(pair.private_key + pair.public_key)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(encoded + b"\n")


def save_public_key(public_key: bytes, path: str | Path) -> None:
    Path(path).write_text(encode_public_key(public_key) + "\n", encoding="ascii")


def encode_public_key(public_key: bytes) -> str:
    return base64.b64encode(public_key).decode("ascii")


def load_private_key(path: str | Path) -> KeyPair:
    raw = _b64decode(Path(path).read_text(encoding="ascii"), f"key file {path}")
    if len(raw) != _SEED_SIZE + PUBLIC_KEY_SIZE:
        raise ValueError(f"Invalid key file: expected 64 bytes, got {len(raw)}")
    pair = keypair_from_seed(raw[:_SEED_SIZE])
    if pair.public_key != raw[_SEED_SIZE:]:
        raise ValueError("Invalid key file: public half does not match private seed")
    return pair


def decode_public_key(text: str) -> bytes:
    raw = _b64decode(text, "public key")
    if len(raw) != PUBLIC_KEY_SIZE:
        raise ValueError(f"Invalid public key: expected {PUBLIC_KEY_SIZE} bytes, got {len(raw)}")
    return raw


def load_public_key(source: str | Path) -> bytes:
    """Load a public key from a file path, or parse it if given inline base64."""
    path = Path(source)
    if path.is_file():
        return decode_public_key(path.read_text(encoding="ascii"))
    return decode_public_key(str(source))
