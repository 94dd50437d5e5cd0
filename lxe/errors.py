"""
Failure taxonomy shared by the codec, packer, installer and registry.

Every error carries a ``reason`` (a str enum) and an ``exit_code``. The core
never renders user-facing text beyond the exception message; the CLI decides
how to present ``kind: reason``.
"""

from __future__ import annotations

from enum import Enum

from lxe import (
    EXIT_BUILD_INPUT,
    EXIT_CANCELLED,
    EXIT_CHECKSUM,
    EXIT_CORRUPT_PAYLOAD,
    EXIT_FILESYSTEM,
    EXIT_FORMAT,
    EXIT_NOT_FOUND,
    EXIT_SIGNATURE,
    EXIT_USAGE,
)


class FormatReason(str, Enum):
    TRUNCATED_FOOTER = "truncated_footer"
    UNSUPPORTED_VERSION = "unsupported_version"
    BAD_MAGIC = "bad_magic"
    BAD_OFFSETS = "bad_offsets"
    BAD_METADATA = "bad_metadata"


class DecodeReason(str, Enum):
    CORRUPT_STREAM = "corrupt_stream"
    UNSAFE_ENTRY = "unsafe_entry"


class BuildReason(str, Enum):
    MISSING_EXECUTABLE = "missing_executable"
    MISSING_ICON = "missing_icon"
    INVALID_METADATA = "invalid_metadata"
    IO_ERROR = "io_error"


class LookupReason(str, Enum):
    NOT_FOUND = "not_found"


class RegistryReason(str, Enum):
    CORRUPT = "corrupt"
    IO_ERROR = "io_error"


class InstallReason(str, Enum):
    FORMAT = "format"
    SELF_LOCATE_UNAVAILABLE = "self_locate_unavailable"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    SIGNATURE_INVALID = "signature_invalid"
    CORRUPT_PAYLOAD = "corrupt_payload"
    PARTIAL_COMMIT = "partial_commit"
    CANCELLED = "cancelled"
    VERSION_CHECK_FAILED = "version_check_failed"
    IO_ERROR = "io_error"


_INSTALL_EXIT_CODES = {
    InstallReason.FORMAT: EXIT_FORMAT,
    InstallReason.SELF_LOCATE_UNAVAILABLE: EXIT_FORMAT,
    InstallReason.CHECKSUM_MISMATCH: EXIT_CHECKSUM,
    InstallReason.SIGNATURE_INVALID: EXIT_SIGNATURE,
    InstallReason.CORRUPT_PAYLOAD: EXIT_CORRUPT_PAYLOAD,
    InstallReason.PARTIAL_COMMIT: EXIT_FILESYSTEM,
    InstallReason.CANCELLED: EXIT_CANCELLED,
    InstallReason.VERSION_CHECK_FAILED: EXIT_FILESYSTEM,
    InstallReason.IO_ERROR: EXIT_FILESYSTEM,
}


class LXEError(Exception):
    """Base class for every failure the core reports upward."""

    kind = "error"
    exit_code = EXIT_USAGE

    def __init__(self, reason: Enum, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or reason.value)


class FormatError(LXEError):
    """Malformed or foreign container."""

    kind = "format"
    exit_code = EXIT_FORMAT


class DecodeError(LXEError):
    """Compressed payload or archive could not be decoded."""

    kind = "decode"
    exit_code = EXIT_CORRUPT_PAYLOAD


class BuildError(LXEError):
    """Packer failure."""

    kind = "build"

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        if self.reason is BuildReason.IO_ERROR:
            return EXIT_FILESYSTEM
        return EXIT_BUILD_INPUT


class InstallError(LXEError):
    """Terminal ``Failed(reason)`` state of the installer engine."""

    kind = "install"

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        return _INSTALL_EXIT_CODES.get(self.reason, EXIT_USAGE)


class RegistryError(LXEError):
    """Registry file is unreadable or corrupt."""

    kind = "registry"
    exit_code = EXIT_FILESYSTEM


class NotFound(LXEError):
    """Uninstall or lookup of an app_id with no installed record."""

    kind = "not_found"
    exit_code = EXIT_NOT_FOUND

    def __init__(self, app_id: str) -> None:
        self.app_id = app_id
        super().__init__(LookupReason.NOT_FOUND, f"Not installed: {app_id}")
