"""Parser cascade for untrusted configuration bytes.

Security notes:
- Every strategy treats input as untrusted and is bounded.
- The cascade never raises; unparseable input yields a diagnostic record.
"""

from .archive import ArchiveEntry, is_office_boilerplate, resolve_archive
from .cascade import CascadeResult, ParseAttempt, run_cascade, strategies_for
from .strategies import ALL_STRATEGIES, DIAGNOSTIC_FALLBACK, ParseInput, ParseStrategy, xml_to_tree
from .tree import BASE64_PREFIX, MAX_TREE_NODES, ParseTree, TreeBudget, child_path, is_structural, to_parse_tree

__all__ = [
    "ArchiveEntry",
    "is_office_boilerplate",
    "resolve_archive",
    "CascadeResult",
    "ParseAttempt",
    "run_cascade",
    "strategies_for",
    "ALL_STRATEGIES",
    "DIAGNOSTIC_FALLBACK",
    "ParseInput",
    "ParseStrategy",
    "xml_to_tree",
    "BASE64_PREFIX",
    "MAX_TREE_NODES",
    "TreeBudget",
    "ParseTree",
    "child_path",
    "is_structural",
    "to_parse_tree",
]
