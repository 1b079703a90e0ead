from __future__ import annotations

import plistlib

from confnorm.core.alerts import AlertKind, AlertSeverity, detect_alerts

TRUNCATED_PLIST = b"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
  <key>PayloadDisplayName</key>
  <string>Corp WiFi</string>
</dict>
"""


def _kinds(alerts):
    return [a.kind for a in alerts]


def test_missing_plist_close_yields_single_incomplete_alert() -> None:
    alerts = detect_alerts("profile.plist", None, TRUNCATED_PLIST)
    assert _kinds(alerts) == [AlertKind.INCOMPLETE_XML]
    assert alerts[0].severity == AlertSeverity.ERROR


def test_tiny_file_is_empty_file_error() -> None:
    alerts = detect_alerts("profile.mobileconfig", None, b"abc")
    assert _kinds(alerts) == [AlertKind.EMPTY_FILE]


def test_well_formed_plist_has_no_alerts() -> None:
    data = plistlib.dumps({"a": "b"}, fmt=plistlib.FMT_XML)
    assert detect_alerts("ok.mobileconfig", None, data) == []


def test_unsupported_extension() -> None:
    alerts = detect_alerts("notes.docx", None, b"some text content here")
    assert _kinds(alerts) == [AlertKind.UNSUPPORTED_FILE_TYPE]
    assert detect_alerts("README", None, b"some text content here")[0].details["extension"] == ""


def test_expected_binary_skips_text_checks() -> None:
    data = plistlib.dumps({"a": 1}, fmt=plistlib.FMT_BINARY)
    assert detect_alerts("p.plist", None, data) == []
    # Binary content under a text extension is an encoding problem.
    assert AlertKind.ENCODING_ISSUE in _kinds(detect_alerts("p.json", None, b"\x00\x01\x02" * 20))


def test_tag_balance_tolerance() -> None:
    body = b"<root>" + b"<item>" * 30 + b"</root>"
    assert AlertKind.MALFORMED_XML in _kinds(detect_alerts("x.xml", None, body))
    assert AlertKind.MALFORMED_XML not in _kinds(
        detect_alerts("x.xml", None, body, tag_balance_tolerance=50)
    )


def test_non_standard_doctype() -> None:
    data = (
        b'<?xml version="1.0"?>\n<!DOCTYPE plist PUBLIC -//Apple//DTD PLIST 1.0//EN>\n'
        b'<plist version="1.0"><dict/></plist>'
    )
    assert _kinds(detect_alerts("p.plist", None, data)) == [AlertKind.MALFORMED_DOCTYPE]


def test_unexpected_xml_content() -> None:
    data = b'<?xml version="1.0"?><WLANProfile><name>x</name></WLANProfile>'
    assert _kinds(detect_alerts("p.mobileconfig", None, data)) == [AlertKind.UNEXPECTED_XML_CONTENT]
    assert detect_alerts("p.xml", None, data) == []


def test_alert_to_dict() -> None:
    d = detect_alerts("profile.mobileconfig", None, b"")[0].to_dict()
    assert d["kind"] == "empty_file"
    assert d["severity"] == "error"
    assert d["details"]["size_bytes"] == 0
