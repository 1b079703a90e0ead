from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from confnorm.core.detection import FileType, normalize_extension, sniff_bytes
from confnorm.core.errors import ParseTimeoutError

from .strategies import (
    ALL_STRATEGIES,
    BASE64_XML,
    DIAGNOSTIC_FALLBACK,
    JSON,
    KEYVALUE,
    PLIST_BINARY,
    PLIST_REPAIRED,
    PLIST_XML,
    XML_TREE,
    YAML,
    ParseInput,
    ParseStrategy,
)
from .tree import ParseTree, is_structural

log = logging.getLogger("confnorm.parsing")

DEFAULT_PARSE_TIMEOUT_SECONDS = 30.0

# Preferred strategies per sniffed tag. The remaining strategies follow in
# their global order so a wrong guess still gets every parser.
_PREFERRED: Dict[FileType, List[ParseStrategy]] = {
    FileType.BINARY_PLIST: [PLIST_BINARY, PLIST_XML, PLIST_REPAIRED],
    FileType.XML_PLIST: [PLIST_XML, PLIST_REPAIRED, XML_TREE],
    FileType.XML: [XML_TREE, PLIST_XML, PLIST_REPAIRED],
    FileType.JSON: [JSON, YAML],
    FileType.YAML: [YAML, KEYVALUE, BASE64_XML],
    FileType.KEYVALUE: [KEYVALUE, YAML],
    FileType.UNKNOWN: [BASE64_XML, PLIST_BINARY, PLIST_XML, PLIST_REPAIRED],
    FileType.ZIP: [],
}


@dataclass(frozen=True, slots=True)
class ParseAttempt:
    strategy: str
    ok: bool
    error: Optional[str] = None
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"strategy": self.strategy, "ok": self.ok, "error": self.error, "elapsed_ms": self.elapsed_ms}


@dataclass(frozen=True, slots=True)
class CascadeResult:
    """Outcome of a cascade run. `tree` is never None."""

    tree: ParseTree
    parser_id: str
    file_type: FileType
    is_fallback: bool
    attempts: tuple

    @property
    def errors(self) -> List[str]:
        return [f"{a.strategy}: {a.error}" for a in self.attempts if not a.ok and a.error]


def strategies_for(file_type: FileType) -> List[ParseStrategy]:
    """Ordered strategies for a sniffed tag (fallback excluded).

    Time:  O(k)
    Space: O(k)
    """

    ordered = list(_PREFERRED.get(file_type, []))
    seen = {s.name for s in ordered}
    for strategy in ALL_STRATEGIES:
        if strategy.name not in seen:
            ordered.append(strategy)
            seen.add(strategy.name)
    return ordered


def _run_with_budget(strategy: ParseStrategy, inp: ParseInput, timeout_seconds: float) -> ParseTree:
    """Run one attempt in a worker thread and stop waiting after the budget.

    A timed-out worker cannot be interrupted; it is abandoned and its result dropped.
    Strategies bound their own work (TreeBudget, XML element limits), so an
    abandoned worker still finishes.

    """

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"confnorm-{strategy.name}")
    future = executor.submit(strategy.parse, inp)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeout as e:
        raise ParseTimeoutError(
            f"{strategy.name} exceeded {timeout_seconds:g}s",
            details={"strategy": strategy.name, "timeout_seconds": timeout_seconds},
        ) from e
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def run_cascade(
    data: bytes,
    *,
    filename: Optional[str] = None,
    extension: Optional[str] = None,
    file_type: Optional[FileType] = None,
    timeout_seconds: float = DEFAULT_PARSE_TIMEOUT_SECONDS,
    strategies: Optional[Sequence[ParseStrategy]] = None,
) -> CascadeResult:
    """Fold the strategies left to right; the first structural tree wins.

    Never raises: every failure (including a timeout) is recorded as an attempt
    and the diagnostic fallback closes the list.

    Security notes:
    - All strategies treat input as untrusted; XML goes through defusedxml or
      plistlib (which rejects entity declarations).

    """

    ext = normalize_extension(extension or filename)
    if file_type is None:
        file_type = sniff_bytes(data, ext).file_type
    inp = ParseInput(data=data, filename=filename, extension=ext, file_type=file_type)
    chain = list(strategies) if strategies is not None else strategies_for(file_type)

    attempts: List[ParseAttempt] = []
    for strategy in chain:
        started = time.monotonic()
        try:
            tree = _run_with_budget(strategy, inp, timeout_seconds)
            if not is_structural(tree):
                raise ValueError("parser did not produce a mapping or list")
        except Exception as e:
            elapsed = int((time.monotonic() - started) * 1000)
            attempts.append(ParseAttempt(strategy.name, False, f"{type(e).__name__}: {e}", elapsed))
            log.debug(
                "parse_attempt_failed",
                extra={"strategy": strategy.name, "file_type": file_type.value, "error_type": type(e).__name__},
            )
            continue
        elapsed = int((time.monotonic() - started) * 1000)
        attempts.append(ParseAttempt(strategy.name, True, None, elapsed))
        log.info(
            "parse_succeeded",
            extra={"strategy": strategy.name, "file_type": file_type.value, "attempts": len(attempts)},
        )
        return CascadeResult(tree, strategy.name, file_type, False, tuple(attempts))

    tree = DIAGNOSTIC_FALLBACK.parse(inp)
    attempts.append(ParseAttempt(DIAGNOSTIC_FALLBACK.name, True, None, 0))
    log.warning(
        "parse_fell_back",
        extra={"file_type": file_type.value, "attempts": len(attempts), "size_bytes": len(data)},
    )
    return CascadeResult(tree, DIAGNOSTIC_FALLBACK.name, file_type, True, tuple(attempts))
