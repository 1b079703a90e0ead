from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class AlertKind(str, Enum):
    UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
    MALFORMED_XML = "malformed_xml"
    MALFORMED_DOCTYPE = "malformed_doctype"
    INCOMPLETE_XML = "incomplete_xml"
    EMPTY_FILE = "empty_file"
    ENCODING_ISSUE = "encoding_issue"
    UNEXPECTED_XML_CONTENT = "unexpected_xml_content"


class AlertSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True, slots=True)
class Alert:
    """Advisory finding about raw input. Alerts never block a conversion."""

    kind: AlertKind
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": dict(self.details),
        }
