"""Upload storage, retry gating, progress and the conversion service."""

from .conversion import (
    ConversionRequest,
    ConversionResult,
    ConversionService,
    dump_json,
    dump_yaml,
    echo_original,
)
from .progress import InMemoryProgressChannel, LoggingProgressChannel, ProgressChannel, ProgressEvent
from .retry_gate import GateOutcome, GateState, RetryGate, RetryPolicy
from .storage import LocalUploadStore, UploadStore, new_token, original_name_from_token, sanitize_basename

__all__ = [
    "ConversionRequest",
    "ConversionResult",
    "ConversionService",
    "dump_json",
    "dump_yaml",
    "echo_original",
    "InMemoryProgressChannel",
    "LoggingProgressChannel",
    "ProgressChannel",
    "ProgressEvent",
    "GateOutcome",
    "GateState",
    "RetryGate",
    "RetryPolicy",
    "LocalUploadStore",
    "UploadStore",
    "new_token",
    "original_name_from_token",
    "sanitize_basename",
]
