from __future__ import annotations

import re
from typing import List

STANDARD_PLIST_DOCTYPE = (
    '<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" '
    '"http://www.apple.com/DTDs/PropertyList-1.0.dtd">'
)

# Anything from the DOCTYPE keyword up to the next tag, so unterminated or
# unquoted identifiers are swallowed too.
_PLIST_DOCTYPE_RE = re.compile(r"<!DOCTYPE\s+plist\b[^<]*", re.IGNORECASE)
_UNKNOWN_ENTITY_RE = re.compile(r"&(?!(?:amp|lt|gt|quot|apos|#\d+|#x[0-9A-Fa-f]+);)")
_ENCODING_DECL_RE = re.compile(r"(<\?xml[^>]*?encoding\s*=\s*)([\"'])[^\"']*\2", re.IGNORECASE)
_TAG_RE = re.compile(r"<(/?)([A-Za-z_][\w:.-]*)([^<>]*?)(/?)>")
_PARTIAL_TAG_TAIL_RE = re.compile(r"<[^<>]*$")


def escape_unknown_entities(text: str) -> str:
    """Escape `&` that does not start a predefined entity or a character reference."""

    return _UNKNOWN_ENTITY_RE.sub("&amp;", text)


def force_utf8_declaration(text: str) -> str:
    """Rewrite the XML declaration's encoding once the text has been decoded."""

    return _ENCODING_DECL_RE.sub(r"\g<1>\g<2>UTF-8\g<2>", text, count=1)


def normalize_plist_doctype(text: str) -> str:
    return _PLIST_DOCTYPE_RE.sub(STANDARD_PLIST_DOCTYPE + "\n", text, count=1)


def close_dangling_tags(text: str) -> str:
    """Append closing tags for elements left open at end of input.

    A trailing partial tag (input truncated mid-tag) is dropped first. Stray
    closing tags that match nothing on the stack are left for the parser to judge.

    Time:  O(n)
    Space: O(depth)
    """

    body = _PARTIAL_TAG_TAIL_RE.sub("", text.rstrip())
    stack: List[str] = []
    for m in _TAG_RE.finditer(body):
        closing, name, _, self_closing = m.groups()
        if self_closing:
            continue
        if not closing:
            stack.append(name)
            continue
        if name in stack:
            while stack:
                if stack.pop() == name:
                    break
    if not stack:
        return body
    return body + "".join(f"</{name}>" for name in reversed(stack))


def repair_plist_text(text: str) -> str:
    """Best-effort repair pipeline for damaged XML property lists."""

    out = normalize_plist_doctype(text)
    out = escape_unknown_entities(out)
    out = force_utf8_declaration(out)
    return close_dangling_tags(out)
