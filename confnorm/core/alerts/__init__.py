"""Advisory malformation alerts over raw upload bytes."""

from .detector import (
    DEFAULT_TAG_BALANCE_TOLERANCE,
    EXPECTED_BINARY_EXTENSIONS,
    SUPPORTED_EXTENSIONS,
    detect_alerts,
    is_probably_binary,
)
from .models import Alert, AlertKind, AlertSeverity

__all__ = [
    "DEFAULT_TAG_BALANCE_TOLERANCE",
    "EXPECTED_BINARY_EXTENSIONS",
    "SUPPORTED_EXTENSIONS",
    "detect_alerts",
    "is_probably_binary",
    "Alert",
    "AlertKind",
    "AlertSeverity",
]
