from __future__ import annotations

import json
import plistlib
import zipfile
from io import BytesIO
from pathlib import Path

import pytest
import yaml

from confnorm.core.alerts import AlertKind
from confnorm.core.config import PipelineConfig
from confnorm.core.errors import ArchiveResolutionError, UploadNotFoundError
from confnorm.core.normalization import CertificateDisplayPolicy, FieldRedactor, FieldTransformPolicy
from confnorm.core.runtime import (
    ConversionRequest,
    ConversionService,
    InMemoryProgressChannel,
    LocalUploadStore,
    RetryGate,
    RetryPolicy,
)

TOKEN = "1700000000000-deadbeef-profile.yaml"


def _service(tmp_path: Path, progress=None) -> ConversionService:
    cfg = PipelineConfig(upload_dir=tmp_path / "primary", alternate_upload_dir=tmp_path / "alternate")
    return ConversionService(
        cfg,
        progress=progress,
        gate=RetryGate(RetryPolicy(max_attempts=3), sleep=lambda s: None),
    )


def test_yaml_password_is_masked(tmp_path: Path) -> None:
    res = _service(tmp_path).convert_bytes(b'password: "s3cr3t!"\n', "config.yaml")
    assert yaml.safe_load(res.yaml) == {"password": "***REDACTED***"}
    assert json.loads(res.json) == {"password": "***REDACTED***"}
    assert res.original == 'password: "s3cr3t!"\n'
    assert res.alerts == ()
    assert res.certificate_metadata == {}
    assert res.notes["parser_id"] == "yaml"
    assert res.notes["redacted_paths"] == ["password"]


def test_tiny_file_alerts_and_falls_back(tmp_path: Path) -> None:
    res = _service(tmp_path).convert_bytes(b"abc", "profile.mobileconfig")
    assert [a.kind for a in res.alerts] == [AlertKind.EMPTY_FILE]
    assert res.notes["is_fallback"] is True
    tree = yaml.safe_load(res.yaml)
    assert tree["fileInfo"]["fileName"] == "profile.mobileconfig"
    assert tree["fileInfo"]["sizeBytes"] == 3


def test_truncated_plist_converts_with_alert(tmp_path: Path) -> None:
    data = (
        b'<?xml version="1.0" encoding="UTF-8"?>\n'
        b'<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">\n'
        b'<plist version="1.0">\n<dict>\n<key>Password</key>\n<string>hunter22</string>\n</dict>\n'
    )
    res = _service(tmp_path).convert_bytes(data, "profile.plist", field_policy=FieldTransformPolicy.LENGTH)
    assert [a.kind for a in res.alerts] == [AlertKind.INCOMPLETE_XML]
    assert res.notes["parser_id"] == "plist_repaired"
    assert yaml.safe_load(res.yaml) == {"Password": "[LENGTH-8-CHARS]"}


def test_alternate_location_is_used(tmp_path: Path) -> None:
    service = _service(tmp_path)
    (tmp_path / "alternate").mkdir()
    (tmp_path / "alternate" / TOKEN).write_bytes(b"ssid: Corp\npsk: abcdefgh\n")
    res = service.convert(ConversionRequest(TOKEN, field_policy=FieldTransformPolicy.PARTIAL))
    assert res.notes["used_alternate_path"] is True
    assert res.notes["retry_attempts"] == 3
    assert res.notes["file_name"] == "profile.yaml"
    assert yaml.safe_load(res.yaml) == {"ssid": "Corp", "psk": "ab***gh"}


def test_missing_upload_raises_after_bounded_retries(tmp_path: Path) -> None:
    progress = InMemoryProgressChannel()
    with pytest.raises(UploadNotFoundError) as ei:
        _service(tmp_path, progress).convert(ConversionRequest(TOKEN, stream_id="s1"))
    assert ei.value.details["attempts"] == 3
    assert len(ei.value.details["candidates"]) == 2
    assert [e.event for e in progress.events("s1")] == ["started", "error"]


def test_zip_without_payload_fails_with_context(tmp_path: Path) -> None:
    buf = BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("styles.xml", "<styles/>")
        zf.writestr("theme.xml", "<theme/>")
    with pytest.raises(ArchiveResolutionError) as ei:
        _service(tmp_path).convert_bytes(buf.getvalue(), "bundle.zip")
    assert ei.value.details["entries"] == ["styles.xml", "theme.xml"]
    assert ei.value.details["file_name"] == "bundle.zip"
    assert ei.value.details["extension"] == ".zip"


def test_zip_with_corrupt_member_reports_error_event(tmp_path: Path) -> None:
    buf = BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("wifi.mobileconfig", plistlib.dumps({"PayloadContent": [{"SSID_STR": "Corp"}]}))
    data = buf.getvalue()
    info = zipfile.ZipFile(BytesIO(data)).getinfo("wifi.mobileconfig")
    start = info.header_offset + 30 + len(info.filename)
    end = start + info.compress_size
    corrupt = data[:start] + bytes(b ^ 0xFF for b in data[start:end]) + data[end:]

    progress = InMemoryProgressChannel()
    with pytest.raises(ArchiveResolutionError) as ei:
        _service(tmp_path, progress).convert_bytes(corrupt, "bundle.zip", stream_id="s3")
    assert ei.value.details["unreadable_entries"] == ["wifi.mobileconfig"]
    events = progress.events("s3")
    assert [e.event for e in events] == ["started", "error"]
    assert events[-1].data["error"] == "archive_resolution_failed"


class _CrashingRedactor(FieldRedactor):
    def redact(self, tree, policy):
        raise RuntimeError("boom")


def test_unexpected_failure_still_publishes_error_event(tmp_path: Path) -> None:
    progress = InMemoryProgressChannel()
    cfg = PipelineConfig(upload_dir=tmp_path / "primary", alternate_upload_dir=tmp_path / "alternate")
    service = ConversionService(cfg, progress=progress, redactor=_CrashingRedactor())
    with pytest.raises(RuntimeError):
        service.convert_bytes(b"ssid: Corp\nrealm: example.com\n", "x.yaml", stream_id="s4")
    events = progress.events("s4")
    assert [e.event for e in events] == ["started", "error"]
    assert events[-1].data == {"error": "internal_error", "message": "RuntimeError", "details": {}}


def test_zip_with_profile_and_mapping(tmp_path: Path) -> None:
    profile = plistlib.dumps(
        {
            "PayloadContent": [
                {
                    "PayloadType": "com.apple.wifi.managed",
                    "EncryptionType": "WPA2",
                    "DomainName": "example.com",
                    "NAIRealmNames": ["example.com"],
                    "EAPClientConfiguration": {"AcceptEAPTypes": [25], "UserName": "bob", "UserPassword": "pw123456"},
                }
            ]
        },
        fmt=plistlib.FMT_XML,
    )
    buf = BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("Passpoint.mobileconfig", profile)
    progress = InMemoryProgressChannel()
    res = _service(tmp_path, progress).convert_bytes(
        buf.getvalue(), "export.zip", include_mapping=True, stream_id="s2"
    )
    assert res.notes["archive_entry"] == "Passpoint.mobileconfig"
    assert res.notes["archive_matched_by"] == "name"
    assert res.notes["parser_id"] == "plist_xml"
    assert res.mapping is not None and res.mapping.source == "apple_profile"
    cred = res.mapping.profile["passpoint_profile"]["credential"]
    assert cred["username"] == "bob"
    assert cred["password"] == "***REDACTED***"
    assert res.original.startswith("base64:")
    events = [e.event for e in progress.events("s2")]
    assert events[0] == "started"
    assert events[-1] == "completed"


def test_certificates_are_handled_after_redaction(tmp_path: Path) -> None:
    pem = "-----BEGIN CERTIFICATE-----\nMIIB...==\n-----END CERTIFICATE-----"
    data = json.dumps({"ca_cert": pem, "password": "pw"}).encode()
    res = _service(tmp_path).convert_bytes(data, "c.json", cert_policy=CertificateDisplayPolicy.HASH)
    tree = json.loads(res.json)
    assert tree["ca_cert"].startswith("cert:sha256:")
    assert "ca_cert_certificate_info" in tree
    assert tree["password"] == "***REDACTED***"
    assert set(res.certificate_metadata) == {"ca_cert"}


def test_result_to_dict_is_json_ready(tmp_path: Path) -> None:
    res = _service(tmp_path).convert_bytes(b"abc", "profile.mobileconfig")
    d = res.to_dict()
    json.dumps(d)
    assert d["alerts"][0]["kind"] == "empty_file"
    assert d["mapping"] is None


def test_store_roundtrip_through_service(tmp_path: Path) -> None:
    service = _service(tmp_path)
    assert isinstance(service.store, LocalUploadStore)
    token = service.store.put(b'{"ssid": "Corp"}', "wifi.json")
    res = service.convert(ConversionRequest(token))
    assert res.notes["retry_attempts"] == 0
    assert res.notes["used_alternate_path"] is False
    assert json.loads(res.json) == {"ssid": "Corp"}
