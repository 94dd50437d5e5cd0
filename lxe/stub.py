"""
Default runtime stub prepended to containers.

A POSIX shell script that hands its own path to ``lxe.runtime`` and exits
before the shell reaches the binary regions that follow it. Frozen runtimes
(a single self-contained executable) can be passed to the packer instead.
"""

from __future__ import annotations

from lxe import __version__

STUB_TEMPLATE = """\
#!/bin/sh
# LXE self-extracting package (runtime {version})
LXE_CONTAINER="$(readlink -f -- "$0" 2>/dev/null || printf '%s' "$0")"
export LXE_CONTAINER
PYTHON="${{LXE_PYTHON:-python3}}"
if ! command -v "$PYTHON" >/dev/null 2>&1; then
    echo "This package needs python3 with the 'lxe' runtime installed." >&2
    exit 1
fi
exec "$PYTHON" -m lxe.runtime "$@"
exit 1
"""


def default_stub() -> bytes:
    return STUB_TEMPLATE.format(version=__version__).encode("ascii")
