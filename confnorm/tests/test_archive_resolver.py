from __future__ import annotations

import plistlib
import zipfile
from io import BytesIO
from typing import Dict

import pytest

from confnorm.core.errors import ArchiveResolutionError
from confnorm.core.parsing import is_office_boilerplate, resolve_archive

THEME_XML = (
    b'<?xml version="1.0"?><a:theme xmlns:a="http://schemas.openxmlformats.org/drawingml/2006/main" '
    b'name="Office Theme"><a:themeElements/></a:theme>'
)
STYLES_XML = b'<?xml version="1.0"?><w:styles xmlns:w="urn:w"><w:style w:type="paragraph"/></w:styles>'


def _zip(members: Dict[str, bytes]) -> bytes:
    buf = BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, payload in members.items():
            zf.writestr(name, payload)
    return buf.getvalue()


def _corrupt_member(data: bytes, name: str) -> bytes:
    """Invert the compressed bytes of one member; headers stay intact."""

    info = zipfile.ZipFile(BytesIO(data)).getinfo(name)
    start = info.header_offset + 30 + len(info.filename.encode("utf-8"))
    start += int.from_bytes(data[info.header_offset + 28 : info.header_offset + 30], "little")
    end = start + info.compress_size
    return data[:start] + bytes(b ^ 0xFF for b in data[start:end]) + data[end:]


def test_office_boilerplate_only_archive_fails_with_entry_list() -> None:
    data = _zip({"styles.xml": STYLES_XML, "theme.xml": THEME_XML})
    with pytest.raises(ArchiveResolutionError) as ei:
        resolve_archive(data)
    assert ei.value.entries == ["styles.xml", "theme.xml"]
    assert ei.value.to_dict()["details"]["entries"] == ["styles.xml", "theme.xml"]


def test_name_pattern_wins_first() -> None:
    profile = plistlib.dumps({"SSID_STR": "Corp"}, fmt=plistlib.FMT_XML)
    data = _zip({"readme.txt": b"hello", "export/Corp-WiFi.mobileconfig": profile})
    entry = resolve_archive(data)
    assert entry.name == "export/Corp-WiFi.mobileconfig"
    assert entry.matched_by == "name"
    assert entry.data == profile


def test_content_marker_match() -> None:
    profile = plistlib.dumps({"PayloadContent": []}, fmt=plistlib.FMT_XML)
    data = _zip({"notes.txt": b"nothing here", "blob.dat": profile})
    entry = resolve_archive(data)
    assert entry.name == "blob.dat"
    assert entry.matched_by == "content"


def test_xml_keyword_match_skips_boilerplate() -> None:
    wlan = b"<WLANProfile><SSIDConfig><SSID><name>Corp</name></SSID></SSIDConfig></WLANProfile>"
    data = _zip(
        {
            "[Content_Types].xml": b"<Types><Default Extension='xml' ContentType='network'/></Types>",
            "word/document.xml": b"<doc>network password</doc>",
            "profiles/corp.xml": wlan,
        }
    )
    entry = resolve_archive(data)
    assert entry.name == "profiles/corp.xml"
    assert entry.matched_by == "xml_keywords"


def test_macos_metadata_is_ignored() -> None:
    profile = plistlib.dumps({"a": 1}, fmt=plistlib.FMT_XML)
    data = _zip({"__MACOSX/._wifi.plist": b"\x00\x05\x16\x07", "._wifi.plist": b"junk", "wifi.plist": profile})
    assert resolve_archive(data).name == "wifi.plist"


def test_empty_and_unreadable_archives() -> None:
    with pytest.raises(ArchiveResolutionError):
        resolve_archive(_zip({}))
    with pytest.raises(ArchiveResolutionError) as ei:
        resolve_archive(b"PK\x03\x04 definitely not a zip")
    assert ei.value.entries == []


def test_is_office_boilerplate() -> None:
    assert is_office_boilerplate("theme1.xml")
    assert is_office_boilerplate("docProps/app.xml")
    assert is_office_boilerplate("_rels/.rels")
    assert not is_office_boilerplate("network.xml")


def test_corrupt_member_is_skipped_for_a_readable_one() -> None:
    profile = plistlib.dumps({"PayloadContent": [{"SSID_STR": "Corp"}]})
    data = _zip({"wifi.mobileconfig": profile, "payload.bin": profile})
    res = resolve_archive(_corrupt_member(data, "wifi.mobileconfig"))
    assert res.name == "payload.bin"
    assert res.matched_by == "content"


def test_only_corrupt_members_fail_with_unreadable_list() -> None:
    profile = plistlib.dumps({"PayloadContent": [{"SSID_STR": "Corp"}]})
    data = _corrupt_member(_zip({"wifi.mobileconfig": profile, "readme.txt": b"hello"}), "wifi.mobileconfig")
    with pytest.raises(ArchiveResolutionError) as ei:
        resolve_archive(data)
    details = ei.value.to_dict()["details"]
    assert details["entries"] == ["wifi.mobileconfig", "readme.txt"]
    assert details["unreadable_entries"] == ["wifi.mobileconfig"]
