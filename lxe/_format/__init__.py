"""
Container format engine.

Format: tail-anchored, version 1 (see ``lxe._format.spec``).
    [stub][MAGIC][metadata][checksum][payload][footer]
"""

from lxe._format.spec import FOOTER_SIZE, ContainerOffsets, EXTENSION
from lxe._format.writer import ContainerWriter, write_container
from lxe._format.reader import (
    ContainerReader,
    read_footer,
    read_metadata,
    read_payload_checksum,
    read_payload_stream,
)

__all__ = [
    "FOOTER_SIZE",
    "EXTENSION",
    "ContainerOffsets",
    "ContainerWriter",
    "ContainerReader",
    "write_container",
    "read_footer",
    "read_metadata",
    "read_payload_checksum",
    "read_payload_stream",
]
