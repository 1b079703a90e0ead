from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import PlainTextResponse

from confnorm.api.middleware import AccessLogMiddleware, RequestIdMiddleware
from confnorm.api.models import (
    ApiError,
    ConversionOut,
    ConvertIn,
    FileInfoOut,
    ProgressEventOut,
    ProgressOut,
    UploadOut,
)
from confnorm.core.config import PipelineConfig
from confnorm.core.detection import normalize_extension, sniff_bytes
from confnorm.core.errors import ArchiveResolutionError, ConfnormError, StorageError, UploadNotFoundError
from confnorm.core.normalization import CertificateDisplayPolicy, FieldTransformPolicy, empty_profile
from confnorm.core.runtime import (
    ConversionRequest,
    ConversionService,
    InMemoryProgressChannel,
    LocalUploadStore,
)
from confnorm.core.runtime.conversion import dump_yaml
from confnorm.core.runtime.storage import is_valid_token, original_name_from_token

log = logging.getLogger("confnorm.api")

_READ_CHUNK = 1024 * 1024


def _error_detail(error: ConfnormError) -> Dict[str, Any]:
    return ApiError(**error.to_dict()).model_dump()


def _status_for(error: ConfnormError) -> int:
    if isinstance(error, UploadNotFoundError):
        return 404
    if isinstance(error, ArchiveResolutionError):
        return 422
    if isinstance(error, StorageError):
        return 500
    return 400


def create_app(config: Optional[PipelineConfig] = None) -> FastAPI:
    """Create the FastAPI app."""

    cfg = config or PipelineConfig.from_env()

    # Logging: safe defaults (no request bodies), can be configured by host app.
    log.setLevel(os.environ.get("CONFNORM_LOG_LEVEL", "INFO").upper())

    app = FastAPI(title="confnorm API", version="0.1")

    progress = InMemoryProgressChannel()
    store = LocalUploadStore(cfg.upload_dir, cfg.alternate_upload_dir)
    service = ConversionService(cfg, store=store, progress=progress)

    app.state.cfg = cfg
    app.state.store = store
    app.state.progress = progress
    app.state.service = service

    # Request correlation + basic access logs.
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(AccessLogMiddleware)

    def _read_upload(upload: UploadFile) -> bytes:
        """Read an UploadFile into memory.

        Security notes:
        - Reads in chunks and stops at max_upload_bytes (413).

        """

        chunks = []
        total = 0
        while True:
            chunk = upload.file.read(_READ_CHUNK)
            if not chunk:
                break
            total += len(chunk)
            if total > cfg.max_upload_bytes:
                raise HTTPException(status_code=413, detail="upload_too_large")
            chunks.append(chunk)
        return b"".join(chunks)

    def _store_upload(upload: UploadFile) -> UploadOut:
        data = _read_upload(upload)
        try:
            token = store.put(data, upload.filename)
        except StorageError as e:
            raise HTTPException(status_code=500, detail=_error_detail(e)) from e
        # Never trust client filename: only the sanitized basename is echoed.
        filename = original_name_from_token(token)
        return UploadOut(
            file_token=token,
            file=FileInfoOut(
                filename=filename,
                extension=normalize_extension(filename) or None,
                detected_type=sniff_bytes(data, filename).file_type.value,
                size_bytes=len(data),
            ),
        )

    def _convert(request: ConversionRequest) -> ConversionOut:
        if not is_valid_token(request.file_token):
            raise HTTPException(status_code=400, detail="invalid_file_token")
        try:
            result = service.convert(request)
        except ConfnormError as e:
            raise HTTPException(status_code=_status_for(e), detail=_error_detail(e)) from e
        return ConversionOut(**result.to_dict())

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "upload_dir": str(cfg.upload_dir),
            "alternate_upload_dir": str(cfg.alternate_upload_dir),
        }

    @app.get("/config", response_class=PlainTextResponse)
    def config_endpoint() -> PlainTextResponse:
        """Blank Passpoint profile template, as YAML."""

        return PlainTextResponse(dump_yaml(empty_profile()), media_type="text/yaml")

    @app.post("/upload", response_model=UploadOut)
    def upload_endpoint(file: UploadFile = File(...)) -> UploadOut:
        """Store an upload and return its token.

        Security notes:
        - Stored under a generated token; the client name is sanitized.

        """

        return _store_upload(file)

    @app.post("/convert", response_model=ConversionOut)
    def convert_endpoint(body: ConvertIn) -> ConversionOut:
        """Convert a previously uploaded file (possibly stored by another worker)."""

        return _convert(
            ConversionRequest(
                file_token=body.file_token,
                field_policy=body.field_policy,
                cert_policy=body.cert_policy,
                stream_id=body.stream_id,
                include_mapping=body.include_mapping,
            )
        )

    @app.post("/upload-and-convert", response_model=ConversionOut)
    def upload_and_convert_endpoint(
        file: UploadFile = File(...),
        field_policy: FieldTransformPolicy = Form(default=FieldTransformPolicy.MASK),
        cert_policy: CertificateDisplayPolicy = Form(default=CertificateDisplayPolicy.OBFUSCATE),
        stream_id: Optional[str] = Form(default=None),
        include_mapping: bool = Form(default=False),
    ) -> ConversionOut:
        """Store and convert in one request."""

        uploaded = _store_upload(file)
        return _convert(
            ConversionRequest(
                file_token=uploaded.file_token,
                field_policy=field_policy,
                cert_policy=cert_policy,
                stream_id=stream_id,
                include_mapping=include_mapping,
            )
        )

    @app.get("/progress/{stream_id}", response_model=ProgressOut)
    def progress_endpoint(stream_id: str) -> ProgressOut:
        events = [ProgressEventOut(**e.to_dict()) for e in progress.events(stream_id)]
        return ProgressOut(stream_id=stream_id, events=events)

    return app


def app_from_env() -> FastAPI:
    """Create an app using environment variables (see PipelineConfig.from_env)."""

    return create_app(PipelineConfig.from_env())


# Default ASGI app (importable as confnorm.api.server:app)
app = app_from_env()
