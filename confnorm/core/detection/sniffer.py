from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

BINARY_PLIST_MAGIC = b"bplist00"
UTF8_BOM = b"\xef\xbb\xbf"

# Window inspected for plist markers. Signed profiles carry a CMS header
# before the embedded XML plist, so the marker is not always at offset 0.
_PLIST_WINDOW = 4096

_PLIST_MARKER_RE = re.compile(rb"<!DOCTYPE\s+plist|<plist[\s>]", re.IGNORECASE)
_XML_START_RE = re.compile(rb"^\s*(<\?xml|<[A-Za-z_][\w:.-]*[\s/>])")
_YAML_LINE_RE = re.compile(r"^\s*(-\s+)?[\"']?[A-Za-z0-9_.\-/ ]+[\"']?\s*:(\s+|$)")
_KV_LINE_RE = re.compile(r"^\s*[A-Za-z0-9_.\-]+\s*=\s*.*$")

KEYVALUE_EXTENSIONS = frozenset({".conf", ".cfg", ".ini", ".txt", ".eap", ".properties", ".env"})


class FileType(str, Enum):
    """Working file-type guess produced without a full parse."""

    BINARY_PLIST = "binary_plist"
    XML_PLIST = "xml_plist"
    XML = "xml"
    ZIP = "zip"
    YAML = "yaml"
    JSON = "json"
    KEYVALUE = "keyvalue"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class SniffResult:
    """Classification of a raw buffer.

    Security notes:
    - Content is untrusted. Classification never parses more than a bounded prefix,
      except the JSON full-parse probe which is capped by `json_probe_limit`.

    """

    file_type: FileType
    extension: str
    confidence: str  # "high" | "medium" | "low"
    profile: Dict[str, Any] = field(default_factory=dict)


def normalize_extension(filename_or_ext: Optional[str]) -> str:
    """Return a lower-case extension with a leading dot (or "")."""

    if not filename_or_ext:
        return ""
    raw = str(filename_or_ext).strip().lower()
    if raw.startswith(".") and "/" not in raw and raw.count(".") == 1:
        return raw
    return os.path.splitext(raw)[1]


def strip_bom(data: bytes) -> bytes:
    if data.startswith(UTF8_BOM):
        return data[len(UTF8_BOM):]
    return data


def byte_profile(data: bytes, *, sample_bytes: int = 4096) -> Dict[str, Any]:
    """Diagnostic byte-level profile kept for unknown/binary input.

    Time:  O(min(n, sample_bytes))
    Space: O(1)
    """

    sample = data[:sample_bytes]
    printable = sum(1 for b in sample if 32 <= b < 127 or b in (9, 10, 13))
    ratio = (printable / len(sample)) if sample else 0.0
    return {
        "size_bytes": len(data),
        "hex_preview": sample[:32].hex(" "),
        "printable_ratio": round(ratio, 3),
        "has_null_bytes": b"\x00" in sample,
    }


def _looks_like_json(text: str, *, json_probe_limit: int) -> bool:
    stripped = text.lstrip()
    if not stripped:
        return False
    if stripped[0] in "{[":
        return True
    if len(text) > json_probe_limit:
        return False
    try:
        value = json.loads(text)
    except ValueError:
        return False
    return isinstance(value, (dict, list))


def _line_ratio(lines, pattern: re.Pattern) -> float:
    candidates = [ln for ln in lines if ln.strip() and not ln.lstrip().startswith(("#", ";"))]
    if not candidates:
        return 0.0
    hits = sum(1 for ln in candidates if pattern.match(ln))
    return hits / len(candidates)


def sniff_bytes(
    data: bytes,
    extension: Optional[str] = None,
    *,
    json_probe_limit: int = 1024 * 1024,
) -> SniffResult:
    """Classify a raw buffer plus an extension hint.

    Decision order (first match wins):
    1) ZIP magic
    2) plist: binary signature / NUL in the first 8 bytes, or a plist marker in
       the first 4096 bytes (XML plist)
    3) XML declaration or leading start tag
    4) JSON (leading brace/bracket or a full successful parse)
    5) YAML `key: value` lines, or `key=value` lines (key/value text)
    6) unknown, with a byte profile

    Ambiguity resolves to the least specific tag; the parser cascade decides.

    """

    ext = normalize_extension(extension)
    if data.startswith(b"PK\x03\x04") or data.startswith(b"PK\x05\x06"):
        return SniffResult(FileType.ZIP, ext, "high")

    body = strip_bom(data)
    head8 = body[:8]
    window = body[:_PLIST_WINDOW]

    binary_head = BINARY_PLIST_MAGIC in head8 or b"\x00" in head8
    if head8.startswith(BINARY_PLIST_MAGIC):
        return SniffResult(FileType.BINARY_PLIST, ext, "high")
    if _PLIST_MARKER_RE.search(window):
        # Sub-variant: a NUL up front means a binary envelope (e.g. a signed
        # profile) around the XML plist.
        if binary_head:
            return SniffResult(FileType.BINARY_PLIST, ext, "medium")
        return SniffResult(FileType.XML_PLIST, ext, "high")
    if binary_head and ext in {".plist", ".mobileconfig"}:
        return SniffResult(FileType.BINARY_PLIST, ext, "medium", byte_profile(data))

    if _XML_START_RE.match(window):
        return SniffResult(FileType.XML, ext, "high")

    text = body.decode("utf-8", errors="replace")
    if _looks_like_json(text, json_probe_limit=json_probe_limit):
        return SniffResult(FileType.JSON, ext, "medium")

    lines = text.splitlines()[:200]
    yaml_ratio = _line_ratio(lines, _YAML_LINE_RE)
    kv_ratio = _line_ratio(lines, _KV_LINE_RE)
    if kv_ratio >= 0.5 and (ext in KEYVALUE_EXTENSIONS or kv_ratio > yaml_ratio):
        return SniffResult(FileType.KEYVALUE, ext, "medium")
    if yaml_ratio > 0.0:
        return SniffResult(FileType.YAML, ext, "medium" if yaml_ratio >= 0.5 else "low")
    if kv_ratio > 0.0:
        return SniffResult(FileType.KEYVALUE, ext, "low")

    return SniffResult(FileType.UNKNOWN, ext, "low", byte_profile(data))


def sniff_file(path: str, *, prefix_bytes: Optional[int] = None) -> SniffResult:
    """Sniff a file on disk.

    Security notes:
    - Reads at most prefix_bytes when given; the JSON probe then sees only the prefix.

    """

    abs_path = os.path.abspath(path)
    with open(abs_path, "rb") as f:
        data = f.read(prefix_bytes) if prefix_bytes else f.read()
    return sniff_bytes(data, os.path.splitext(abs_path)[1])
