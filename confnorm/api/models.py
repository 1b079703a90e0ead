from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from confnorm.core.normalization import CertificateDisplayPolicy, FieldTransformPolicy


class ApiError(BaseModel):
    """Standard API error payload."""

    error: str
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class FileInfoOut(BaseModel):
    """A safe summary of an upload, derived from bounded sniffing."""

    filename: str
    extension: Optional[str] = None
    detected_type: Optional[str] = None
    size_bytes: int


class UploadOut(BaseModel):
    file_token: str
    file: FileInfoOut


class ConvertIn(BaseModel):
    """Conversion request for a previously uploaded file."""

    file_token: str
    field_policy: FieldTransformPolicy = FieldTransformPolicy.MASK
    cert_policy: CertificateDisplayPolicy = CertificateDisplayPolicy.OBFUSCATE
    stream_id: Optional[str] = Field(default=None, max_length=128)
    include_mapping: bool = False


class AlertOut(BaseModel):
    kind: str
    severity: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ConversionOut(BaseModel):
    """Conversion result: serialized tree, original echo and provenance."""

    yaml: str
    json_text: str = Field(alias="json")
    original: str
    certificate_metadata: Dict[str, Any] = Field(default_factory=dict)
    alerts: List[AlertOut] = Field(default_factory=list)
    notes: Dict[str, Any] = Field(default_factory=dict)
    mapping: Optional[Dict[str, Any]] = None

    model_config = {"populate_by_name": True}


class ProgressEventOut(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
    at: str


class ProgressOut(BaseModel):
    stream_id: str
    events: List[ProgressEventOut] = Field(default_factory=list)
