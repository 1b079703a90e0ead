"""Normalization passes over parse trees.

Every pass is a pure transform: it returns a new tree and never mutates input.

Security notes:
- Never assume source values are well-formed or benign.
- Passes never log field values.
"""

from .certificates import (
    CertificateHandler,
    CertificateMetadata,
    CertificateResult,
    find_certificate_spans,
    is_certificate_data,
)
from .passpoint import EAP_METHOD_NAMES, MappingResult, empty_profile, map_to_passpoint, organization_identifier
from .policies import CertificateDisplayPolicy, FieldTransformPolicy
from .redaction import (
    DEFAULT_REDACTION_RULES,
    MASK_MARKER,
    FieldRedactor,
    RedactionResult,
    RedactionRules,
    is_redaction_marker,
    transform_value,
)

__all__ = [
    "CertificateHandler",
    "CertificateMetadata",
    "CertificateResult",
    "find_certificate_spans",
    "is_certificate_data",
    "EAP_METHOD_NAMES",
    "MappingResult",
    "empty_profile",
    "map_to_passpoint",
    "organization_identifier",
    "CertificateDisplayPolicy",
    "FieldTransformPolicy",
    "DEFAULT_REDACTION_RULES",
    "MASK_MARKER",
    "FieldRedactor",
    "RedactionResult",
    "RedactionRules",
    "is_redaction_marker",
    "transform_value",
]
