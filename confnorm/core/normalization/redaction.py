from __future__ import annotations

import base64
import hashlib
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Tuple

from confnorm.core.parsing.tree import BASE64_PREFIX, TEXT_KEY, ParseTree, child_path

from .policies import FieldTransformPolicy

MASK_MARKER = "***REDACTED***"
HASH_PREFIX = "sha256:"

_LENGTH_MARKER_RE = re.compile(r"^\[LENGTH-\d+-CHARS\]$")
_PARTIAL_MARKER_RE = re.compile(r"^.{2}\*\*\*.{2}$", re.S)


@dataclass(frozen=True, slots=True)
class RedactionRules:
    """Which keys hold sensitive values.

    - exact_keys: case-sensitive exact key names
    - key_patterns: narrow regexes matched against the key name
    - excluded_keys: case-insensitive names that are never redacted; always wins

    """

    exact_keys: FrozenSet[str] = frozenset()
    key_patterns: Tuple[re.Pattern[str], ...] = ()
    excluded_keys: FrozenSet[str] = frozenset()
    _excluded_lower: FrozenSet[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_excluded_lower", frozenset(k.lower() for k in self.excluded_keys))

    def matches(self, key: str) -> bool:
        if key.lower() in self._excluded_lower:
            return False
        if key in self.exact_keys:
            return True
        return any(p.search(key) for p in self.key_patterns)

    def with_keys(self, extra: Iterable[str]) -> "RedactionRules":
        return RedactionRules(
            exact_keys=self.exact_keys | frozenset(extra),
            key_patterns=self.key_patterns,
            excluded_keys=self.excluded_keys,
        )


DEFAULT_REDACTION_RULES = RedactionRules(
    exact_keys=frozenset(
        {
            # Apple configuration profiles
            "Password",
            "UserPassword",
            "PayloadCertificatePassword",
            "EAPIdentityProviderPassword",
            # WLAN profile XML
            "keyMaterial",
            # Passpoint / YAML attribute sets
            "password",
            "passphrase",
            "psk",
            "shared_secret",
            "client_secret",
        }
    ),
    key_patterns=(
        re.compile(r"password$", re.IGNORECASE),
        re.compile(r"^passphrase$", re.IGNORECASE),
        re.compile(r"^(psk|pre_?shared_?key)$", re.IGNORECASE),
        re.compile(r"^(shared|client)_?secret$", re.IGNORECASE),
    ),
    # Boolean switches in Apple EAP payloads that end in "Password".
    excluded_keys=frozenset({"OneTimeUserPassword", "OneTimePassword"}),
)


def is_redaction_marker(value: str) -> bool:
    """True for values a previous redaction pass (or binary encoding) produced."""

    return (
        value == MASK_MARKER
        or value.startswith(HASH_PREFIX)
        or value.startswith(BASE64_PREFIX)
        or bool(_LENGTH_MARKER_RE.match(value))
        or bool(_PARTIAL_MARKER_RE.match(value))
    )


def transform_value(value: str, policy: FieldTransformPolicy) -> str:
    """Apply one display strategy to a single sensitive string.

    Time:  O(n)
    Space: O(n)
    """

    if policy is FieldTransformPolicy.NONE:
        return value
    if policy is FieldTransformPolicy.MASK:
        return MASK_MARKER
    if policy is FieldTransformPolicy.PARTIAL:
        if len(value) <= 4:
            return MASK_MARKER
        return f"{value[:2]}***{value[-2:]}"
    if policy is FieldTransformPolicy.LENGTH:
        return f"[LENGTH-{len(value)}-CHARS]"
    if policy is FieldTransformPolicy.HASH:
        return HASH_PREFIX + hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]
    if policy is FieldTransformPolicy.BASE64:
        return BASE64_PREFIX + base64.b64encode(value.encode("utf-8")).decode("ascii")
    raise ValueError(f"Unknown field transform policy: {policy}")


def _is_text_wrapped(value: ParseTree) -> bool:
    """An XML element with attributes: `{attr: ..., "_": text}`."""

    return isinstance(value, dict) and isinstance(value.get(TEXT_KEY), str)


@dataclass(frozen=True, slots=True)
class RedactionResult:
    tree: ParseTree
    redacted_paths: Tuple[str, ...]


class FieldRedactor:
    """Pure tree transform that rewrites sensitive leaf values.

    Properties:
    - idempotent: values already carrying a marker are left alone
    - non-interfering: keys, list length/order and unmatched values are unchanged
    - a sensitive XML element carrying attributes has its text (`_`) rewritten

    Security notes:
    - Never logs values.
    - `base64` is reversible; callers choose it knowingly.

    """

    def __init__(self, rules: Optional[RedactionRules] = None):
        self._rules = rules or DEFAULT_REDACTION_RULES

    @property
    def rules(self) -> RedactionRules:
        return self._rules

    def redact(self, tree: ParseTree, policy: FieldTransformPolicy) -> RedactionResult:
        policy = FieldTransformPolicy(policy)
        paths: List[str] = []
        out = self._walk(tree, policy, "", paths)
        return RedactionResult(tree=out, redacted_paths=tuple(paths))

    def _walk(self, node: ParseTree, policy: FieldTransformPolicy, path: str, paths: List[str]) -> ParseTree:
        if isinstance(node, dict):
            out = {}
            for key, value in node.items():
                sub = child_path(path, key)
                if isinstance(value, str) and self._rules.matches(key):
                    out[key] = self._redact_leaf(value, policy, sub, paths)
                elif _is_text_wrapped(value) and self._rules.matches(key):
                    wrapped = self._walk(value, policy, sub, paths)
                    wrapped[TEXT_KEY] = self._redact_leaf(value[TEXT_KEY], policy, child_path(sub, TEXT_KEY), paths)
                    out[key] = wrapped
                else:
                    out[key] = self._walk(value, policy, sub, paths)
            return out
        if isinstance(node, list):
            return [self._walk(v, policy, child_path(path, i), paths) for i, v in enumerate(node)]
        return node

    @staticmethod
    def _redact_leaf(value: str, policy: FieldTransformPolicy, path: str, paths: List[str]) -> str:
        if policy is FieldTransformPolicy.NONE or not value or is_redaction_marker(value):
            return value
        paths.append(path)
        return transform_value(value, policy)
