from __future__ import annotations

import base64
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from confnorm.core.alerts import Alert, detect_alerts
from confnorm.core.config import PipelineConfig
from confnorm.core.detection import FileType, normalize_extension, sniff_bytes
from confnorm.core.errors import ConfnormError
from confnorm.core.normalization import (
    CertificateDisplayPolicy,
    CertificateHandler,
    FieldRedactor,
    FieldTransformPolicy,
    MappingResult,
    map_to_passpoint,
)
from confnorm.core.parsing import ParseTree, resolve_archive, run_cascade
from confnorm.utils.json_safe import to_jsonable

from .progress import LoggingProgressChannel, ProgressChannel, ProgressEvent
from .retry_gate import RetryGate, RetryPolicy
from .storage import LocalUploadStore, UploadStore, original_name_from_token, read_upload

log = logging.getLogger("confnorm.pipeline")

DEFAULT_FIELD_POLICY = FieldTransformPolicy.MASK
DEFAULT_CERT_POLICY = CertificateDisplayPolicy.OBFUSCATE


@dataclass(frozen=True, slots=True)
class ConversionRequest:
    file_token: str
    field_policy: FieldTransformPolicy = DEFAULT_FIELD_POLICY
    cert_policy: CertificateDisplayPolicy = DEFAULT_CERT_POLICY
    stream_id: Optional[str] = None
    include_mapping: bool = False


@dataclass(frozen=True, slots=True)
class ConversionResult:
    """Everything a caller gets back from one conversion. Never mutated after return."""

    yaml: str
    json: str
    original: str
    certificate_metadata: Dict[str, Dict[str, Any]]
    alerts: Tuple[Alert, ...]
    notes: Dict[str, Any] = field(default_factory=dict)
    mapping: Optional[MappingResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "yaml": self.yaml,
            "json": self.json,
            "original": self.original,
            "certificate_metadata": to_jsonable(self.certificate_metadata),
            "alerts": [a.to_dict() for a in self.alerts],
            "notes": to_jsonable(self.notes),
            "mapping": self.mapping.to_dict() if self.mapping is not None else None,
        }


def dump_yaml(tree: ParseTree) -> str:
    return yaml.safe_dump(tree, sort_keys=False, width=120, allow_unicode=True, default_flow_style=False)


def dump_json(tree: ParseTree) -> str:
    return json.dumps(tree, indent=2, ensure_ascii=False)


def _internal_error(error: Exception) -> Dict[str, Any]:
    """Progress payload for an unexpected failure; carries the type, never the message."""

    return {"error": "internal_error", "message": type(error).__name__, "details": {}}


def echo_original(data: bytes) -> str:
    """Original bytes as text when they are clean UTF-8, else `base64:` encoded."""

    if b"\x00" not in data:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            pass
    return "base64:" + base64.b64encode(data).decode("ascii")


class ConversionService:
    """Runs the full pipeline for one upload.

    Order: retry gate -> read -> alerts -> sniff -> archive (ZIP only) -> parser
    cascade -> field redaction -> certificate handling -> optional mapping ->
    YAML/JSON serialization.

    Security notes:
    - Uploads are never deleted here; the sweep owns retention.
    - Logs carry sizes, types and counts, never content.

    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        store: Optional[UploadStore] = None,
        progress: Optional[ProgressChannel] = None,
        redactor: Optional[FieldRedactor] = None,
        certificates: Optional[CertificateHandler] = None,
        gate: Optional[RetryGate] = None,
    ):
        self.config = config or PipelineConfig()
        self.store = store or LocalUploadStore(self.config.upload_dir, self.config.alternate_upload_dir)
        self.progress = progress or LoggingProgressChannel()
        self.redactor = redactor or FieldRedactor()
        self.certificates = certificates or CertificateHandler()
        self.gate = gate or RetryGate(RetryPolicy(max_attempts=self.config.retry_max_attempts))

    def _publish(self, stream_id: Optional[str], event: str, **data: Any) -> None:
        if stream_id:
            self.progress.publish(stream_id, ProgressEvent(event, data))

    def convert(self, request: ConversionRequest) -> ConversionResult:
        """Convert a previously stored upload.

        Raises UploadNotFoundError when the gate is exhausted, StorageError when
        the file exists but cannot be read, ArchiveResolutionError for ZIPs
        without a configuration payload.

        """

        token = request.file_token
        self._publish(request.stream_id, "started", file_token=token)
        try:
            candidates = self.store.candidates(token)
            outcome = self.gate.resolve(
                candidates[0], candidates[1] if len(candidates) > 1 else None, token=token
            )
            data = read_upload(outcome.path, token=token)
        except ConfnormError as e:
            self._publish(request.stream_id, "error", **e.to_dict())
            raise
        except Exception as e:
            self._publish(request.stream_id, "error", **_internal_error(e))
            raise

        return self.convert_bytes(
            data,
            original_name_from_token(token),
            field_policy=request.field_policy,
            cert_policy=request.cert_policy,
            stream_id=request.stream_id,
            include_mapping=request.include_mapping,
            extra_notes={
                "file_token": token,
                "retry_attempts": outcome.attempts,
                "used_alternate_path": outcome.used_alternate,
            },
            _started=True,
        )

    def convert_bytes(
        self,
        data: bytes,
        filename: Optional[str],
        *,
        field_policy: FieldTransformPolicy = DEFAULT_FIELD_POLICY,
        cert_policy: CertificateDisplayPolicy = DEFAULT_CERT_POLICY,
        stream_id: Optional[str] = None,
        include_mapping: bool = False,
        extra_notes: Optional[Dict[str, Any]] = None,
        _started: bool = False,
    ) -> ConversionResult:
        """Run the pipeline over bytes already in memory."""

        field_policy = FieldTransformPolicy(field_policy)
        cert_policy = CertificateDisplayPolicy(cert_policy)
        if not _started:
            self._publish(stream_id, "started", file_name=filename)

        t0 = time.monotonic()
        try:
            result = self._run(data, filename, field_policy, cert_policy, stream_id, include_mapping, extra_notes)
        except ConfnormError as e:
            details = dict(e.details)
            details.setdefault("file_name", filename)
            details.setdefault("size_bytes", len(data))
            details.setdefault("extension", normalize_extension(filename))
            e.details = details
            log.warning("conversion_failed", extra={"error_code": e.code, "size_bytes": len(data)})
            self._publish(stream_id, "error", **e.to_dict())
            raise
        except Exception as e:
            log.error("conversion_crashed", extra={"error_type": type(e).__name__, "size_bytes": len(data)})
            self._publish(stream_id, "error", **_internal_error(e))
            raise

        elapsed = int((time.monotonic() - t0) * 1000)
        log.info(
            "conversion_completed",
            extra={
                "file_type": result.notes.get("file_type"),
                "parser_id": result.notes.get("parser_id"),
                "alert_count": len(result.alerts),
                "size_bytes": len(data),
                "elapsed_ms": elapsed,
            },
        )
        self._publish(
            stream_id,
            "completed",
            parser_id=result.notes.get("parser_id"),
            alert_count=len(result.alerts),
            elapsed_ms=elapsed,
        )
        return result

    def _run(
        self,
        data: bytes,
        filename: Optional[str],
        field_policy: FieldTransformPolicy,
        cert_policy: CertificateDisplayPolicy,
        stream_id: Optional[str],
        include_mapping: bool,
        extra_notes: Optional[Dict[str, Any]],
    ) -> ConversionResult:
        tolerance = self.config.tag_balance_tolerance
        ext = normalize_extension(filename)
        alerts: List[Alert] = detect_alerts(filename, ext, data, tag_balance_tolerance=tolerance)
        sniff = sniff_bytes(data, ext)

        notes: Dict[str, Any] = dict(extra_notes or {})
        notes["file_name"] = filename
        notes["size_bytes"] = len(data)
        payload, payload_name, payload_ext = data, filename, ext
        if sniff.file_type is FileType.ZIP:
            entry = resolve_archive(data)
            payload, payload_name = entry.data, entry.name
            payload_ext = normalize_extension(entry.name)
            notes["archive_entry"] = entry.name
            notes["archive_matched_by"] = entry.matched_by
            alerts.extend(detect_alerts(entry.name, payload_ext, payload, tag_balance_tolerance=tolerance))
            sniff = sniff_bytes(payload, payload_ext)

        if alerts:
            self._publish(stream_id, "alerts", alerts=[a.to_dict() for a in alerts])

        cascade = run_cascade(
            payload,
            filename=payload_name,
            extension=payload_ext,
            file_type=sniff.file_type,
            timeout_seconds=self.config.parse_timeout_seconds,
        )
        redacted = self.redactor.redact(cascade.tree, field_policy)
        handled = self.certificates.handle(redacted.tree, cert_policy)
        tree = handled.tree

        mapping = map_to_passpoint(tree) if include_mapping else None

        notes.update(
            {
                "file_type": sniff.file_type.value,
                "sniff_confidence": sniff.confidence,
                "parser_id": cascade.parser_id,
                "is_fallback": cascade.is_fallback,
                "parse_attempts": [a.to_dict() for a in cascade.attempts],
                "field_policy": field_policy.value,
                "cert_policy": cert_policy.value,
                "redacted_paths": list(redacted.redacted_paths),
                "certificate_paths": sorted(handled.metadata),
            }
        )
        if mapping is not None:
            notes["mapping_source"] = mapping.source

        return ConversionResult(
            yaml=dump_yaml(tree),
            json=dump_json(tree),
            original=echo_original(data),
            certificate_metadata=handled.metadata,
            alerts=tuple(alerts),
            notes=notes,
            mapping=mapping,
        )
