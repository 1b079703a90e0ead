from __future__ import annotations

import re
from typing import List, Optional

from confnorm.core.detection import BINARY_PLIST_MAGIC, normalize_extension

from .models import Alert, AlertKind, AlertSeverity

SUPPORTED_EXTENSIONS = (
    ".mobileconfig",
    ".plist",
    ".xml",
    ".yml",
    ".yaml",
    ".json",
    ".zip",
    ".conf",
    ".cfg",
    ".ini",
    ".txt",
    ".eap",
    ".properties",
    ".pem",
    ".der",
    ".p12",
)

# Extensions whose payload is legitimately binary (signed profiles, archives,
# DER/PKCS#12 containers). Binary content there is not an encoding problem.
EXPECTED_BINARY_EXTENSIONS = frozenset({".mobileconfig", ".plist", ".zip", ".der", ".p12"})

DEFAULT_TAG_BALANCE_TOLERANCE = 20
MIN_CONTENT_BYTES = 10

_BINARY_SAMPLE_BYTES = 64 * 1024
_CONTROL_RATIO_THRESHOLD = 0.10

_OPEN_TAG_RE = re.compile(r"<[A-Za-z_][\w:.-]*(?:\s[^<>]*)?(?<!/)>")
_CLOSE_TAG_RE = re.compile(r"</[A-Za-z_][\w:.-]*\s*>")
_DOCTYPE_RE = re.compile(r"<!DOCTYPE\s+plist[^>]*>?", re.IGNORECASE)
_STANDARD_DOCTYPE_RE = re.compile(
    r'^<!DOCTYPE plist PUBLIC "-//Apple(?: Computer)?//DTD PLIST 1\.0//EN" '
    r'"http://www\.apple\.com/DTDs/PropertyList-1\.0\.dtd">$'
)


def is_probably_binary(content: bytes) -> bool:
    """NUL bytes, or more than 10% control characters in the sample."""

    sample = content[:_BINARY_SAMPLE_BYTES]
    if not sample:
        return False
    if b"\x00" in sample:
        return True
    control = sum(1 for b in sample if b < 32 and b not in (9, 10, 13))
    return control / len(sample) > _CONTROL_RATIO_THRESHOLD


def _looks_like_xml(text: str) -> bool:
    head = text[:1024]
    return text.lstrip().startswith("<") or "<?xml" in head or "<plist" in text


def detect_alerts(
    filename: Optional[str],
    extension: Optional[str],
    content: bytes,
    *,
    tag_balance_tolerance: int = DEFAULT_TAG_BALANCE_TOLERANCE,
) -> List[Alert]:
    """Inspect raw bytes for signs of malformation.

    Pure and advisory: every check is evaluated independently and nothing here
    affects whether a conversion proceeds. Binary content with an expected-binary
    extension (or a bplist00 signature) skips the XML/plist text checks.

    Security notes:
    - Works on a decoded copy; never parses or resolves entities.

    Time:  O(n)
    Space: O(n) for the decoded text
    """

    ext = normalize_extension(extension or filename)
    alerts: List[Alert] = []

    if ext not in SUPPORTED_EXTENSIONS:
        alerts.append(
            Alert(
                AlertKind.UNSUPPORTED_FILE_TYPE,
                AlertSeverity.WARNING,
                f"File extension '{ext or '(none)'}' is not a supported configuration type",
                {"extension": ext, "supported": list(SUPPORTED_EXTENSIONS)},
            )
        )

    if len(content) < MIN_CONTENT_BYTES:
        alerts.append(
            Alert(
                AlertKind.EMPTY_FILE,
                AlertSeverity.ERROR,
                f"File is empty or too small to be a configuration file ({len(content)} bytes)",
                {"size_bytes": len(content), "minimum_bytes": MIN_CONTENT_BYTES},
            )
        )

    binary = is_probably_binary(content)
    if binary and (ext in EXPECTED_BINARY_EXTENSIONS or content.startswith(BINARY_PLIST_MAGIC)):
        return alerts

    text = content.decode("utf-8", errors="replace")
    if "\ufffd" in text or "\x00" in text:
        alerts.append(
            Alert(
                AlertKind.ENCODING_ISSUE,
                AlertSeverity.WARNING,
                "File contains invalid UTF-8 sequences or NUL bytes",
                {
                    "replacement_chars": text.count("\ufffd"),
                    "nul_bytes": text.count("\x00"),
                    "probably_binary": binary,
                },
            )
        )

    if not _looks_like_xml(text):
        return alerts

    opening = len(_OPEN_TAG_RE.findall(text))
    closing = len(_CLOSE_TAG_RE.findall(text))
    if abs(opening - closing) > tag_balance_tolerance:
        alerts.append(
            Alert(
                AlertKind.MALFORMED_XML,
                AlertSeverity.ERROR,
                "XML tags appear unbalanced",
                {"opening_tags": opening, "closing_tags": closing, "tolerance": tag_balance_tolerance},
            )
        )

    doctype = _DOCTYPE_RE.search(text)
    if doctype and not _STANDARD_DOCTYPE_RE.match(" ".join(doctype.group(0).split())):
        alerts.append(
            Alert(
                AlertKind.MALFORMED_DOCTYPE,
                AlertSeverity.WARNING,
                "Property list DOCTYPE declaration is non-standard",
                {"doctype": doctype.group(0)[:200]},
            )
        )

    if "<plist" in text and "</plist>" not in text:
        alerts.append(
            Alert(
                AlertKind.INCOMPLETE_XML,
                AlertSeverity.ERROR,
                "Property list is missing its closing </plist> tag",
                {"size_bytes": len(content)},
            )
        )

    if "<?xml" in text and "<plist" not in text and "<dict" not in text and ext != ".xml":
        alerts.append(
            Alert(
                AlertKind.UNEXPECTED_XML_CONTENT,
                AlertSeverity.INFO,
                "XML declaration found without property list structure",
                {"extension": ext},
            )
        )

    return alerts
