from __future__ import annotations

from enum import Enum


class FieldTransformPolicy(str, Enum):
    """How a sensitive field value is displayed.

    `base64` is an encoding for display, not a security control.
    """

    NONE = "none"
    MASK = "mask"
    PARTIAL = "partial"
    LENGTH = "length"
    HASH = "hash"
    BASE64 = "base64"


class CertificateDisplayPolicy(str, Enum):
    """How detected certificate material is displayed."""

    PRESERVE = "preserve"
    OBFUSCATE = "obfuscate"
    HASH = "hash"
    TRUNCATE = "truncate"
    INFO = "info"
