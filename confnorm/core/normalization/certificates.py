from __future__ import annotations

import base64
import binascii
import hashlib
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from confnorm.core.parsing.tree import BASE64_PREFIX, ParseTree, child_path

from .policies import CertificateDisplayPolicy

SIBLING_SUFFIX = "_certificate_info"
OBFUSCATED_MARKER = "[CERTIFICATE DATA REDACTED]"

_PEM_BLOCK_RE = re.compile(
    r"-----BEGIN ([A-Z0-9 ]+)-----(.*?)-----END \1-----",
    re.S,
)
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
_MIN_BASE64_CERT_CHARS = 100

_CN_RE = re.compile(r"CN=([^,/\n]+)")
_O_RE = re.compile(r"O=([^,/\n]+)")
_NOT_AFTER_RE = re.compile(r"Not After\s*:\s*([^\n]+)")


@dataclass(frozen=True, slots=True)
class CertificateMetadata:
    """Descriptive facts about one detected certificate or key.

    `fingerprint` and `size_bytes` are always set; the rest degrade to None.

    """

    fingerprint: str
    size_bytes: int
    format: str  # "PEM" | "Base64"
    kind: str  # "certificate" | "private_key" | "public_key" | "unknown"
    subject: Optional[str] = None
    issuer: Optional[str] = None
    valid_from: Optional[str] = None
    valid_to: Optional[str] = None
    serial_number: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class CertificateResult:
    tree: ParseTree
    metadata: Dict[str, Dict[str, Any]]


@dataclass(frozen=True, slots=True)
class _Span:
    start: int
    end: int
    label: Optional[str]  # PEM label, None for bare base64
    body: str


def _kind_for_label(label: Optional[str]) -> str:
    if label is None:
        return "unknown"
    if "PRIVATE KEY" in label:
        return "private_key"
    if "PUBLIC KEY" in label:
        return "public_key"
    if "CERTIFICATE" in label:
        return "certificate"
    return "unknown"


def _looks_like_base64_cert(value: str) -> bool:
    compact = re.sub(r"\s+", "", value)
    if compact.startswith(BASE64_PREFIX):
        compact = compact[len(BASE64_PREFIX):]
    return (
        len(compact) > _MIN_BASE64_CERT_CHARS
        and compact.startswith("MII")
        and bool(_BASE64_RE.match(compact))
    )


def find_certificate_spans(value: str) -> List[_Span]:
    """Locate certificate material inside a string.

    PEM blocks are returned individually; otherwise a bare base64 DER value
    (optionally carrying the `base64:` prefix) is returned as one span.

    """

    spans = [
        _Span(m.start(), m.end(), m.group(1), m.group(2))
        for m in _PEM_BLOCK_RE.finditer(value)
    ]
    if spans:
        return spans
    if _looks_like_base64_cert(value):
        body = value.strip()
        if body.startswith(BASE64_PREFIX):
            body = body[len(BASE64_PREFIX):]
        return [_Span(0, len(value), None, body)]
    return []


def is_certificate_data(value: Any) -> bool:
    return isinstance(value, str) and bool(find_certificate_spans(value))


def _decode_body(body: str) -> bytes:
    compact = re.sub(r"\s+", "", body)
    compact += "=" * (-len(compact) % 4)
    return base64.b64decode(compact, validate=True)


def _substitute_fingerprint(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()[:16] + "..."


def extract_metadata(value: str, span: _Span) -> CertificateMetadata:
    """Describe one span; never raises.

    Order: cryptography.x509 over the DER bytes, then regex over the decoded bytes
    and the literal text, then a stub carrying the error. A certificate whose DER
    loads but whose fields do not decode takes the regex path with `error` set.

    """

    fmt = "PEM" if span.label is not None else "Base64"
    kind = _kind_for_label(span.label)
    literal = value[span.start : span.end]
    try:
        der = _decode_body(span.body)
    except (binascii.Error, ValueError) as e:
        return CertificateMetadata(
            fingerprint=_substitute_fingerprint(literal.encode("utf-8")),
            size_bytes=len(literal.encode("utf-8")),
            format=fmt,
            kind=kind,
            subject="Certificate (parsing error)",
            error=f"invalid base64 body: {e}",
        )

    x509_error: Optional[str] = None
    if kind in ("certificate", "unknown"):
        # Fields are decoded lazily, so accessors can fail after a successful load.
        try:
            cert = x509.load_der_x509_certificate(der)
            return CertificateMetadata(
                fingerprint=cert.fingerprint(hashes.SHA256()).hex(":").upper(),
                size_bytes=len(der),
                format=fmt,
                kind="certificate",
                subject=cert.subject.rfc4514_string() or None,
                issuer=cert.issuer.rfc4514_string() or None,
                valid_from=cert.not_valid_before_utc.isoformat(),
                valid_to=cert.not_valid_after_utc.isoformat(),
                serial_number=format(cert.serial_number, "X"),
            )
        except ValueError as e:
            if kind == "certificate":
                x509_error = f"x509 parsing failed: {e}"

    decoded_text = der.decode("latin-1")
    subject = _CN_RE.search(decoded_text) or _CN_RE.search(literal)
    issuer = _O_RE.search(decoded_text) or _O_RE.search(literal)
    not_after = _NOT_AFTER_RE.search(decoded_text) or _NOT_AFTER_RE.search(literal)
    return CertificateMetadata(
        fingerprint=_substitute_fingerprint(der),
        size_bytes=len(der),
        format=fmt,
        kind=kind,
        subject=subject.group(1).strip() if subject else None,
        issuer=issuer.group(1).strip() if issuer else None,
        valid_to=not_after.group(1).strip() if not_after else None,
        error=x509_error,
    )


def render_span(value: str, span: _Span, metadata: CertificateMetadata, policy: CertificateDisplayPolicy) -> str:
    literal = value[span.start : span.end]
    if policy is CertificateDisplayPolicy.PRESERVE:
        return literal
    if policy is CertificateDisplayPolicy.OBFUSCATE:
        return OBFUSCATED_MARKER
    if policy is CertificateDisplayPolicy.HASH:
        return "cert:sha256:" + hashlib.sha256(literal.encode("utf-8")).hexdigest()[:16] + "..."
    if policy is CertificateDisplayPolicy.TRUNCATE:
        if span.label is None:
            return "..."
        return f"-----BEGIN {span.label}-----...-----END {span.label}-----"
    if policy is CertificateDisplayPolicy.INFO:
        return f"[CERTIFICATE: {metadata.subject}]" if metadata.subject else "[CERTIFICATE]"
    raise ValueError(f"Unknown certificate display policy: {policy}")


class CertificateHandler:
    """Detect, describe and re-render certificate material in a ParseTree.

    - Transforms replace only the detected span(s) inside a string.
    - A mapping value that was transformed gains a `<key>_certificate_info`
      sibling (a dict, or a list of dicts for several PEM blocks).
      The sibling is not written when the input already has a key of that name.
    - `preserve` returns a tree equal to its input; metadata is still collected.

    Security notes:
    - Private keys are never parsed; only hashed and measured.
    - Metadata extraction failures degrade per field and never abort the pass.

    """

    def handle(self, tree: ParseTree, policy: CertificateDisplayPolicy) -> CertificateResult:
        policy = CertificateDisplayPolicy(policy)
        collected: Dict[str, Dict[str, Any]] = {}
        out = self._walk(tree, policy, "", collected)
        return CertificateResult(tree=out, metadata=collected)

    def _walk(
        self,
        node: ParseTree,
        policy: CertificateDisplayPolicy,
        path: str,
        collected: Dict[str, Dict[str, Any]],
    ) -> ParseTree:
        if isinstance(node, dict):
            out: Dict[str, ParseTree] = {}
            for key, value in node.items():
                sub = child_path(path, key)
                if isinstance(value, str):
                    rendered, infos = self._process_string(value, policy, sub, collected)
                    out[key] = rendered
                    sibling = f"{key}{SIBLING_SUFFIX}"
                    # An input key of the same name keeps its value; metadata stays in `collected`.
                    if infos and policy is not CertificateDisplayPolicy.PRESERVE and sibling not in node:
                        out[sibling] = infos[0] if len(infos) == 1 else infos
                else:
                    out[key] = self._walk(value, policy, sub, collected)
            return out
        if isinstance(node, list):
            return [self._walk(v, policy, child_path(path, i), collected) for i, v in enumerate(node)]
        if isinstance(node, str):
            return self._process_string(node, policy, path, collected)[0]
        return node

    @staticmethod
    def _process_string(
        value: str,
        policy: CertificateDisplayPolicy,
        path: str,
        collected: Dict[str, Dict[str, Any]],
    ) -> Tuple[str, List[Dict[str, Any]]]:
        spans = find_certificate_spans(value)
        if not spans:
            return value, []

        infos: List[Dict[str, Any]] = []
        pieces: List[str] = []
        cursor = 0
        for index, span in enumerate(spans):
            metadata = extract_metadata(value, span)
            info = metadata.to_dict()
            infos.append(info)
            collected[path if len(spans) == 1 else f"{path}#{index + 1}"] = info
            pieces.append(value[cursor : span.start])
            pieces.append(render_span(value, span, metadata, policy))
            cursor = span.end
        pieces.append(value[cursor:])
        return "".join(pieces), infos
