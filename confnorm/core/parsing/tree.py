from __future__ import annotations

import base64
import plistlib
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from confnorm.core.errors import ParseError

# A parse tree is one of: null, boolean, number, string, ordered list of
# trees, or ordered mapping of string keys to trees. Parsers must emit only
# these variants; transform passes return new trees and never mutate input.
ParseTree = Union[None, bool, int, float, str, List["ParseTree"], Dict[str, "ParseTree"]]

BASE64_PREFIX = "base64:"

# Key holding an XML element's text when it also has attributes or children.
TEXT_KEY = "_"

# Conversion bounds. YAML aliases and binary plist object references share
# subtrees, so a small document can expand into an enormous tree.
MAX_TREE_NODES = 500_000
MAX_TREE_DEPTH = 200


class TreeBudget:
    """Node and depth allowance for one conversion; exceeding it is a ParseError."""

    def __init__(self, max_nodes: int = MAX_TREE_NODES, max_depth: int = MAX_TREE_DEPTH) -> None:
        self.max_nodes = max_nodes
        self.max_depth = max_depth
        self.nodes = 0

    def charge(self, depth: int) -> None:
        self.nodes += 1
        if self.nodes > self.max_nodes:
            raise ParseError(f"tree has too many nodes (> {self.max_nodes})")
        if depth > self.max_depth:
            raise ParseError(f"tree nesting too deep (> {self.max_depth})")


def to_parse_tree(value: Any, budget: Optional[TreeBudget] = None) -> ParseTree:
    """Coerce a parser's native output into a ParseTree.

    - bytes (plist <data>) -> "base64:<b64>" string
    - datetime/date (plist <date>, YAML timestamps) -> ISO 8601 string
    - plistlib.UID (keyed archives) -> int
    - mapping keys -> str

    Security notes:
    - Pure data conversion; never imports or executes anything.
    - Shared subtrees are expanded against `budget`, so alias bombs stop with
      a ParseError instead of growing without bound.

    """

    return _convert(value, budget or TreeBudget(), 1)


def _convert(value: Any, budget: TreeBudget, depth: int) -> ParseTree:
    budget.charge(depth)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return BASE64_PREFIX + base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, plistlib.UID):
        return int(value.data)
    if isinstance(value, Mapping):
        return {str(k): _convert(v, budget, depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_convert(v, budget, depth + 1) for v in value]
    return str(value)


def is_structural(tree: ParseTree) -> bool:
    """A parse is accepted by the cascade only if it yields a mapping or a list."""

    return isinstance(tree, (dict, list))


def child_path(parent: str, key: Union[str, int]) -> str:
    """Dotted path used in provenance notes and metadata maps."""

    if isinstance(key, int):
        return f"{parent}[{key}]"
    return f"{parent}.{key}" if parent else str(key)
