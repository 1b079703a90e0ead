from __future__ import annotations

import base64
import binascii
import hashlib
import json
import plistlib
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import yaml
from defusedxml import ElementTree as DefusedET

from confnorm.core.detection import BINARY_PLIST_MAGIC, FileType, byte_profile, strip_bom
from confnorm.core.errors import ParseError

from .repair import escape_unknown_entities, force_utf8_declaration, repair_plist_text
from .tree import TEXT_KEY, ParseTree, is_structural, to_parse_tree

# XML conversion bounds (pathological input protection)
_MAX_XML_ELEMENTS = 200_000
_MAX_XML_DEPTH = 200
_MAX_XML_ATTRIBUTES = 256

_RAW_PREVIEW_CHARS = 2000

_PLIST_START_MARKERS = (b"<?xml", b"<!DOCTYPE plist", b"<plist")
_PLIST_END_MARKER = b"</plist>"

_BASE64_TEXT_RE = re.compile(r"^[A-Za-z0-9+/=\s]+$")
_XML_FRAGMENT_RE = re.compile(rb"<\?xml[^>]*\?>\s*(?:<!--.*?-->\s*|<!DOCTYPE[^>]*>\s*)*<([A-Za-z_][\w:.-]*)", re.S)
_ROOT_TAG_RE = re.compile(rb"<([A-Za-z_][\w:.-]*)[\s/>]")

_KV_PAIR_RE = re.compile(r"^\s*([^=:#;\s<\[][^=:]*?)\s*[=:]\s*(.*?)\s*$")
_KV_SECTION_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")


@dataclass(frozen=True, slots=True)
class ParseInput:
    """Bytes handed to every strategy plus the hints gathered before parsing."""

    data: bytes
    filename: Optional[str] = None
    extension: str = ""
    file_type: FileType = FileType.UNKNOWN


@dataclass(frozen=True, slots=True)
class ParseStrategy:
    name: str
    parse: Callable[[ParseInput], ParseTree]


def _decode_text(data: bytes) -> str:
    try:
        return strip_bom(data).decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"content is not valid UTF-8 text: {e}") from e


def _require_structure(tree: ParseTree, what: str) -> ParseTree:
    if not is_structural(tree):
        raise ParseError(f"{what} did not produce a mapping or list")
    return tree


# ---------------------------------------------------------------------------
# Property lists
# ---------------------------------------------------------------------------


def extract_plist_span(data: bytes) -> bytes:
    """Return the `<?xml … </plist>` span of a buffer.

    Signed profiles wrap the XML plist in a binary CMS envelope; the span is the
    only part plistlib can read. Buffers without both markers are returned as is.

    """

    body = strip_bom(data)
    starts = [i for i in (body.find(m) for m in _PLIST_START_MARKERS) if i >= 0]
    end = body.rfind(_PLIST_END_MARKER)
    if not starts or end < 0:
        return body
    start = min(starts)
    if end < start:
        return body
    return body[start : end + len(_PLIST_END_MARKER)]


def parse_plist_binary(inp: ParseInput) -> ParseTree:
    if not inp.data.startswith(BINARY_PLIST_MAGIC):
        raise ParseError("missing bplist00 signature")
    value = plistlib.loads(inp.data, fmt=plistlib.FMT_BINARY)
    return _require_structure(to_parse_tree(value), "binary plist")


def parse_plist_xml(inp: ParseInput) -> ParseTree:
    span = extract_plist_span(inp.data)
    value = plistlib.loads(span, fmt=plistlib.FMT_XML)
    return _require_structure(to_parse_tree(value), "XML plist")


def parse_plist_repaired(inp: ParseInput) -> ParseTree:
    """Parse a damaged XML plist after DOCTYPE, entity and closing-tag repair.

    Security notes:
    - plistlib rejects entity declarations; repair never adds any.

    """

    span = extract_plist_span(inp.data)
    text = span.decode("utf-8", errors="replace")
    if "<plist" not in text and "<dict" not in text and "<array" not in text:
        raise ParseError("no plist structure to repair")
    repaired = repair_plist_text(text)
    if "<plist" not in repaired:
        repaired = f"<plist version=\"1.0\">{repaired}</plist>"
    value = plistlib.loads(repaired.encode("utf-8"), fmt=plistlib.FMT_XML)
    return _require_structure(to_parse_tree(value), "repaired plist")


# ---------------------------------------------------------------------------
# Generic XML
# ---------------------------------------------------------------------------


def _local_name(tag: Any) -> str:
    tag = str(tag)
    return tag.split("}", 1)[1] if "}" in tag else tag


class _XmlBudget:
    def __init__(self) -> None:
        self.elements = 0

    def charge(self, depth: int) -> None:
        self.elements += 1
        if self.elements > _MAX_XML_ELEMENTS:
            raise ParseError(f"XML has too many elements (> {_MAX_XML_ELEMENTS})")
        if depth > _MAX_XML_DEPTH:
            raise ParseError(f"XML nesting too deep (> {_MAX_XML_DEPTH})")


def _element_to_tree(elem: Any, budget: _XmlBudget, depth: int) -> ParseTree:
    """Convert one element.

    - attributes merge into the element mapping as keys
    - a leaf element without attributes becomes its stripped text
    - text mixed with attributes/children is kept under TEXT_KEY ("_")
    - repeated child tags collapse into a list

    """

    budget.charge(depth)
    if len(elem.attrib) > _MAX_XML_ATTRIBUTES:
        raise ParseError(f"XML element has too many attributes (> {_MAX_XML_ATTRIBUTES})")

    children = list(elem)
    text = (elem.text or "").strip()
    if not elem.attrib and not children:
        return text

    node: Dict[str, ParseTree] = {_local_name(k): v for k, v in elem.attrib.items()}
    repeated = set()
    for child in children:
        key = _local_name(child.tag)
        value = _element_to_tree(child, budget, depth + 1)
        if key not in node:
            node[key] = value
        elif key in repeated:
            node[key].append(value)  # type: ignore[union-attr]
        else:
            node[key] = [node[key], value]
            repeated.add(key)
    if text:
        node[TEXT_KEY] = text
    return node


def xml_to_tree(data: bytes) -> ParseTree:
    """Parse XML leniently into a ParseTree keyed by the root element name.

    Security notes:
    - defusedxml: DTDs are allowed (plists declare one) but entity declarations
      and external references are rejected.
    - Unknown entity references are escaped rather than resolved.

    """

    text = strip_bom(data).decode("utf-8", errors="replace")
    text = force_utf8_declaration(escape_unknown_entities(text))
    root = DefusedET.fromstring(
        text.encode("utf-8"),
        forbid_dtd=False,
        forbid_entities=True,
        forbid_external=True,
    )
    return {_local_name(root.tag): _element_to_tree(root, _XmlBudget(), 1)}


def parse_xml_tree(inp: ParseInput) -> ParseTree:
    return xml_to_tree(inp.data)


# ---------------------------------------------------------------------------
# Base64-wrapped XML
# ---------------------------------------------------------------------------


def _decode_base64_text(text: str) -> bytes:
    compact = re.sub(r"\s+", "", text)
    compact += "=" * (-len(compact) % 4)
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ParseError(f"invalid base64: {e}") from e


def find_xml_fragment(decoded: bytes) -> Optional[bytes]:
    """Locate an embedded XML document inside a decoded (possibly multipart) body."""

    start = decoded.find(b"<?xml")
    end = decoded.rfind(_PLIST_END_MARKER)
    if start >= 0 and end > start:
        return decoded[start : end + len(_PLIST_END_MARKER)]

    m = _XML_FRAGMENT_RE.search(decoded)
    if m is None:
        m = _ROOT_TAG_RE.search(decoded)
        if m is None:
            return None
    root = m.group(1)
    close = b"</" + root + b">"
    end = decoded.rfind(close)
    if end < 0:
        return None
    return decoded[m.start() : end + len(close)]


def parse_base64_xml(inp: ParseInput) -> ParseTree:
    """Decode printable base64 text and parse the XML it carries.

    Tries, in order: binary plist, plist span, generic XML of the embedded fragment.

    """

    try:
        text = strip_bom(inp.data).decode("ascii").strip()
    except UnicodeDecodeError as e:
        raise ParseError("not printable base64 text") from e
    if len(text) < 16 or "<" in text or not _BASE64_TEXT_RE.match(text):
        raise ParseError("not printable base64 text")

    decoded = _decode_base64_text(text)
    if decoded.startswith(BINARY_PLIST_MAGIC):
        return parse_plist_binary(ParseInput(data=decoded))

    fragment = find_xml_fragment(decoded)
    if fragment is None:
        raise ParseError("decoded base64 carries no XML fragment")
    if _PLIST_END_MARKER in fragment:
        try:
            return parse_plist_xml(ParseInput(data=fragment))
        except Exception:
            return parse_plist_repaired(ParseInput(data=fragment))
    return xml_to_tree(fragment)


# ---------------------------------------------------------------------------
# Text formats
# ---------------------------------------------------------------------------


def parse_json(inp: ParseInput) -> ParseTree:
    text = _decode_text(inp.data)
    try:
        value = json.loads(text)
    except ValueError as e:
        raise ParseError(f"invalid JSON: {e}") from e
    return _require_structure(to_parse_tree(value), "JSON")


def _yaml_load(text: str) -> Any:
    docs = [d for d in yaml.safe_load_all(text) if d is not None]
    if not docs:
        return None
    return docs[0] if len(docs) == 1 else docs


def parse_yaml(inp: ParseInput) -> ParseTree:
    """PyYAML safe loader; tabs used for indentation are expanded on retry."""

    text = _decode_text(inp.data)
    try:
        value = _yaml_load(text)
    except yaml.YAMLError as e:
        if "\t" not in text:
            raise ParseError(f"invalid YAML: {e}") from e
        try:
            value = _yaml_load(text.expandtabs(2))
        except yaml.YAMLError as e2:
            raise ParseError(f"invalid YAML: {e2}") from e2
    return _require_structure(to_parse_tree(value), "YAML")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _kv_put(target: Dict[str, Any], key: str, value: Any) -> None:
    if key not in target:
        target[key] = value
    elif isinstance(target[key], list):
        target[key].append(value)
    else:
        target[key] = [target[key], value]


def parse_keyvalue(inp: ParseInput) -> ParseTree:
    """`key=value` / `key: value` lines; `[section]` headers nest the following keys.

    At least half of the content lines must be pairs or section headers.

    """

    text = _decode_text(inp.data)
    out: Dict[str, Any] = {}
    current = out
    content_lines = 0
    matched = 0
    pairs = 0
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", ";")):
            continue
        content_lines += 1
        section = _KV_SECTION_RE.match(line)
        if section:
            matched += 1
            name = section.group(1).strip()
            existing = out.get(name)
            current = existing if isinstance(existing, dict) else {}
            out[name] = current
            continue
        pair = _KV_PAIR_RE.match(line)
        if pair:
            matched += 1
            pairs += 1
            _kv_put(current, pair.group(1), _unquote(pair.group(2)))

    if pairs == 0 or matched * 2 < content_lines:
        raise ParseError("content is not key/value text")
    return out


# ---------------------------------------------------------------------------
# Diagnostic fallback
# ---------------------------------------------------------------------------


def diagnostic_fallback(inp: ParseInput) -> ParseTree:
    """Always succeeds: a descriptive record of input nothing else could parse.

    Security notes:
    - The raw preview is only included for text-looking input and is bounded.

    """

    profile = byte_profile(inp.data)
    is_binary = bool(profile["has_null_bytes"]) or profile["printable_ratio"] < 0.7
    preview: Optional[str] = None
    if inp.data and not is_binary:
        preview = inp.data[:_RAW_PREVIEW_CHARS * 4].decode("utf-8", errors="replace")[:_RAW_PREVIEW_CHARS]
    return {
        "fileInfo": {
            "fileName": inp.filename,
            "extension": inp.extension or None,
            "detectedType": inp.file_type.value,
            "sizeBytes": len(inp.data),
            "sha256": hashlib.sha256(inp.data).hexdigest(),
        },
        "rawContentPreview": preview,
        "binaryInfo": {
            "isBinary": is_binary,
            "hexPreview": profile["hex_preview"],
            "printableRatio": profile["printable_ratio"],
            "hasNullBytes": profile["has_null_bytes"],
        },
    }


PLIST_BINARY = ParseStrategy("plist_binary", parse_plist_binary)
PLIST_XML = ParseStrategy("plist_xml", parse_plist_xml)
PLIST_REPAIRED = ParseStrategy("plist_repaired", parse_plist_repaired)
XML_TREE = ParseStrategy("xml_tree", parse_xml_tree)
BASE64_XML = ParseStrategy("base64_xml", parse_base64_xml)
JSON = ParseStrategy("json", parse_json)
YAML = ParseStrategy("yaml", parse_yaml)
KEYVALUE = ParseStrategy("keyvalue", parse_keyvalue)
DIAGNOSTIC_FALLBACK = ParseStrategy("diagnostic_fallback", diagnostic_fallback)

ALL_STRATEGIES: List[ParseStrategy] = [
    PLIST_BINARY,
    PLIST_XML,
    PLIST_REPAIRED,
    XML_TREE,
    BASE64_XML,
    JSON,
    YAML,
    KEYVALUE,
]
