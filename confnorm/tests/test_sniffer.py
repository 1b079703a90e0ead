from __future__ import annotations

import plistlib
import zipfile
from io import BytesIO
from pathlib import Path

from confnorm.core.detection import FileType, normalize_extension, sniff_bytes, sniff_file


def _zip_bytes() -> bytes:
    buf = BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("a.txt", "hello")
    return buf.getvalue()


def test_zip_magic_wins() -> None:
    assert sniff_bytes(_zip_bytes(), ".mobileconfig").file_type == FileType.ZIP


def test_binary_plist_signature() -> None:
    data = plistlib.dumps({"a": 1}, fmt=plistlib.FMT_BINARY)
    res = sniff_bytes(data, ".plist")
    assert res.file_type == FileType.BINARY_PLIST
    assert res.confidence == "high"


def test_xml_plist_marker_and_bom() -> None:
    data = b"\xef\xbb\xbf" + plistlib.dumps({"a": 1}, fmt=plistlib.FMT_XML)
    assert sniff_bytes(data, ".mobileconfig").file_type == FileType.XML_PLIST


def test_signed_profile_is_binary_subvariant() -> None:
    inner = plistlib.dumps({"PayloadType": "Configuration"}, fmt=plistlib.FMT_XML)
    data = b"\x30\x80\x06\x09\x2a\x86\x00\x00" + b"\x01" * 40 + inner + b"\x00" * 16
    assert sniff_bytes(data, ".mobileconfig").file_type == FileType.BINARY_PLIST


def test_generic_xml() -> None:
    assert sniff_bytes(b'<?xml version="1.0"?><WLANProfile/>').file_type == FileType.XML
    assert sniff_bytes(b"  <root><a>1</a></root>").file_type == FileType.XML


def test_json_variants() -> None:
    assert sniff_bytes(b'  {"a": 1}').file_type == FileType.JSON
    assert sniff_bytes(b"[1, 2]").file_type == FileType.JSON


def test_yaml_and_keyvalue() -> None:
    assert sniff_bytes(b"server:\n  host: localhost\n  port: 6001\n").file_type == FileType.YAML
    assert sniff_bytes(b"ssid=Corp\npsk=secret\n").file_type == FileType.KEYVALUE
    # Extension hint prefers key/value text for mixed content.
    mixed = b"ssid=Corp\nmode: wpa2\npsk=secret\n"
    assert sniff_bytes(mixed, ".conf").file_type == FileType.KEYVALUE


def test_unknown_keeps_byte_profile() -> None:
    res = sniff_bytes(b"\x01\x02\x03garbage", ".bin")
    assert res.file_type == FileType.UNKNOWN
    assert res.profile["size_bytes"] == 10
    assert res.profile["hex_preview"].startswith("01 02 03")


def test_sniff_never_raises_on_empty_input() -> None:
    assert sniff_bytes(b"").file_type == FileType.UNKNOWN


def test_normalize_extension() -> None:
    assert normalize_extension("Profile.MobileConfig") == ".mobileconfig"
    assert normalize_extension(".YAML") == ".yaml"
    assert normalize_extension(None) == ""


def test_sniff_file(tmp_path: Path) -> None:
    p = tmp_path / "wifi.json"
    p.write_text('{"ssid": "Corp"}', encoding="utf-8")
    res = sniff_file(str(p))
    assert res.file_type == FileType.JSON
    assert res.extension == ".json"
