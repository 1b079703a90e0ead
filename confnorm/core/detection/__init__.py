"""Byte-level file type detection.

Security notes:
- Sniffing never parses untrusted content beyond a bounded window.
"""

from .sniffer import (
    BINARY_PLIST_MAGIC,
    FileType,
    SniffResult,
    byte_profile,
    normalize_extension,
    sniff_bytes,
    sniff_file,
    strip_bom,
)

__all__ = [
    "BINARY_PLIST_MAGIC",
    "FileType",
    "SniffResult",
    "byte_profile",
    "normalize_extension",
    "sniff_bytes",
    "sniff_file",
    "strip_bom",
]
