"""
LXE: universal self-extracting application packages for Linux.

Architecture:
    Container:  [runtime stub][MAGIC][metadata JSON][sha256][zstd payload][footer]
    Install:    ~/.local/share/lxe/<app_id> (user) or /usr/share/lxe/<app_id> (system)
    Registry:   ~/.config/lxe/registry.json (user) or /etc/lxe/registry.json (system)
"""

__version__ = "0.3.0"

# Container format constants
CONTAINER_MAGIC = b"\x00LXE\xf0\x9f\x93\x01"
FOOTER_MAGIC = b"LXEFOOT\x01"
FORMAT_VERSION = 1
CHECKSUM_SIZE = 32  # SHA-256
MAX_METADATA_SIZE = 1024 * 1024  # 1 MB

# Compression
COMPRESSION_LEVEL = 19  # ratio over speed, runs once per release
IO_CHUNK_SIZE = 64 * 1024

# Install layout
DEFAULT_NAMESPACE = "lxe"
SYSTEM_DATA_HOME = "/usr/share"
SYSTEM_CONFIG_HOME = "/etc"
SYSTEM_BIN_DIR = "/usr/bin"
REGISTRY_FILENAME = "registry.json"
ICON_SIZE_DIR = "48x48"

# Signing
SIGNATURE_ALGORITHM = "ed25519"
PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64

# Exit codes, stable within a release line
EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FORMAT = 2
EXIT_CHECKSUM = 3
EXIT_SIGNATURE = 4
EXIT_FILESYSTEM = 5
EXIT_NOT_FOUND = 6
EXIT_BUILD_INPUT = 7
EXIT_CORRUPT_PAYLOAD = 8
EXIT_CANCELLED = 9
