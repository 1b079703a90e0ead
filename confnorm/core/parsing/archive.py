from __future__ import annotations

import fnmatch
import io
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass
from typing import List, Optional

from confnorm.core.errors import ArchiveResolutionError

log = logging.getLogger("confnorm.parsing")

# Zip safety limits (defense-in-depth against zip bombs)
_MAX_ZIP_ENTRIES = 5000
_MAX_TOTAL_UNCOMPRESSED_BYTES = 50 * 1024 * 1024  # 50MB
_MAX_SINGLE_FILE_BYTES = 10 * 1024 * 1024  # 10MB

_CONTENT_SCAN_LIMIT = 1024 * 1024  # 1MiB

NAME_PATTERNS = ("*.plist", "*.mobileconfig", "*passpoint*", "*wifi*", "*802dot1x*")

CONTENT_MARKERS = (
    b"<!DOCTYPE plist",
    b"<plist",
    b"com.apple.wifi.managed",
    b"com.apple.eap",
    b"PayloadContent",
    b"bplist00",
)

# Office Open XML parts that never carry network configuration.
OFFICE_BOILERPLATE_NAMES = frozenset(
    {"[content_types].xml", "styles.xml", "settings.xml", "fonttable.xml", "websettings.xml"}
)
OFFICE_BOILERPLATE_PREFIXES = ("_rels/", "docprops/", "word/", "xl/", "ppt/")
_THEME_RE = re.compile(r"^theme\d*\.xml$")

_XML_KEYWORD_RE = re.compile(
    rb"ssid|wi-?fi|wlan|passpoint|hotspot|802\.1x|eap|realm|roamingconsortium|nairealm|"
    rb"network|credential|password|passphrase|psk",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """The configuration payload chosen from an archive."""

    name: str
    data: bytes
    matched_by: str  # "name" | "content" | "xml_keywords"


def _basename(name: str) -> str:
    return name.rstrip("/").rsplit("/", 1)[-1]


def _is_skipped(info: zipfile.ZipInfo) -> bool:
    return info.is_dir() or info.filename.startswith("__MACOSX/") or _basename(info.filename).startswith("._")


def is_office_boilerplate(name: str) -> bool:
    lowered = name.lower()
    base = _basename(lowered)
    if lowered.startswith(OFFICE_BOILERPLATE_PREFIXES):
        return True
    return base in OFFICE_BOILERPLATE_NAMES or bool(_THEME_RE.match(base))


def _enforce_zip_limits(zf: zipfile.ZipFile, entries: List[str]) -> None:
    infos = zf.infolist()
    if len(infos) > _MAX_ZIP_ENTRIES:
        raise ArchiveResolutionError(
            f"ZIP has too many entries: {len(infos)} > {_MAX_ZIP_ENTRIES}", entries=entries
        )

    total = 0
    for info in infos:
        if info.file_size > _MAX_SINGLE_FILE_BYTES:
            raise ArchiveResolutionError(
                f"ZIP entry too large: {info.filename} ({info.file_size} bytes)", entries=entries
            )
        total += info.file_size
        if total > _MAX_TOTAL_UNCOMPRESSED_BYTES:
            raise ArchiveResolutionError(f"ZIP total too large: {total} bytes", entries=entries)


def _read(zf: zipfile.ZipFile, info: zipfile.ZipInfo, unreadable: List[str]) -> Optional[bytes]:
    try:
        return zf.read(info)
    except (
        RuntimeError,
        zipfile.BadZipFile,
        zipfile.LargeZipFile,
        zlib.error,
        EOFError,
        OSError,
        ValueError,
        NotImplementedError,
    ) as e:
        # Encrypted, truncated or corrupt members are skipped; other entries may still match.
        log.warning("archive_entry_unreadable", extra={"entry": info.filename, "error_type": type(e).__name__})
        if info.filename not in unreadable:
            unreadable.append(info.filename)
        return None


def resolve_archive(data: bytes) -> ArchiveEntry:
    """Pick the configuration payload out of a ZIP archive.

    Passes (first match wins):
    1) entry names matching NAME_PATTERNS
    2) entries up to 1MiB containing a plist/profile marker
    3) `.xml` entries outside office boilerplate containing network keywords

    Raises ArchiveResolutionError (listing every entry name) when the archive is
    unreadable, empty, over the size limits, or holds no match.

    Security notes:
    - Zip bomb limits: entry count, per-entry size, total uncompressed size.
    - Entries are only read into memory; nothing is extracted to disk.

    Time:  O(E + U) where E = entries, U = bytes scanned (bounded)
    Space: O(single entry)
    """

    try:
        zf = zipfile.ZipFile(io.BytesIO(data), "r")
    except (zipfile.BadZipFile, OSError, ValueError) as e:
        raise ArchiveResolutionError(f"Unreadable ZIP archive: {e}", entries=[]) from e

    with zf:
        infos = zf.infolist()
        entries = [i.filename for i in infos]
        if not infos:
            raise ArchiveResolutionError("ZIP archive is empty", entries=entries)
        _enforce_zip_limits(zf, entries)

        files = [i for i in infos if not _is_skipped(i)]
        unreadable: List[str] = []

        for info in files:
            base = _basename(info.filename).lower()
            if any(fnmatch.fnmatchcase(base, pattern) for pattern in NAME_PATTERNS):
                payload = _read(zf, info, unreadable)
                if payload is not None:
                    return ArchiveEntry(info.filename, payload, "name")

        for info in files:
            if info.file_size > _CONTENT_SCAN_LIMIT:
                continue
            payload = _read(zf, info, unreadable)
            if payload is not None and any(marker in payload for marker in CONTENT_MARKERS):
                return ArchiveEntry(info.filename, payload, "content")

        for info in files:
            if not info.filename.lower().endswith(".xml") or is_office_boilerplate(info.filename):
                continue
            payload = _read(zf, info, unreadable)
            if payload is not None and _XML_KEYWORD_RE.search(payload):
                return ArchiveEntry(info.filename, payload, "xml_keywords")

    raise ArchiveResolutionError(
        "No network configuration file found in ZIP archive",
        entries=entries,
        details={"searched_patterns": list(NAME_PATTERNS), "unreadable_entries": unreadable},
    )
