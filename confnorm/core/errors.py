from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional


class ConfnormError(Exception):
    """
    Base exception for all pipeline failures that reach the caller.

    Every terminal error carries a structured `details` mapping so an operator
    can diagnose without reproducing locally.
    """

    code: str = "confnorm_error"

    def __init__(self, message: str, *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": dict(self.details)}


class UploadNotFoundError(ConfnormError):
    """
    Raised when the retry gate exhausted every candidate location.
    """

    code = "upload_not_found"

    def __init__(self, token: str, *, candidates: List[str], attempts: int, waited_seconds: float):
        super().__init__(
            f"File not found on server: {token}",
            details={
                "file_token": token,
                "candidates": list(candidates),
                "attempts": attempts,
                "waited_seconds": round(waited_seconds, 3),
            },
        )


class ArchiveResolutionError(ConfnormError):
    """
    Raised when a ZIP upload holds no resolvable configuration payload.
    """

    code = "archive_resolution_failed"

    def __init__(self, message: str, *, entries: List[str], details: Optional[Mapping[str, Any]] = None):
        merged = dict(details or {})
        merged["entries"] = list(entries)
        super().__init__(message, details=merged)
        self.entries = list(entries)


class StorageError(ConfnormError):
    """
    Raised when an upload exists but cannot be read.
    """

    code = "storage_error"


class ParseError(ConfnormError):
    """
    Raised by a single parse strategy. Never escapes the parser cascade.
    """

    code = "parse_error"


class ParseTimeoutError(ParseError):
    """
    Raised when a parse attempt exceeds its wall-clock budget.
    """

    code = "parse_timeout"
