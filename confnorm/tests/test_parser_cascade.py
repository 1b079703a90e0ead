from __future__ import annotations

import base64
import os
import plistlib
import threading

import pytest

from confnorm.core.detection import FileType
from confnorm.core.errors import ParseError
from confnorm.core.parsing import ParseStrategy, TreeBudget, run_cascade, strategies_for, to_parse_tree

TRUNCATED_PLIST = b"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
  <key>PayloadDisplayName</key>
  <string>Corp WiFi</string>
  <key>Password</key>
  <string>hunter22</string>
</dict>
"""


def test_xml_plist_parses_and_converts_data_and_dates() -> None:
    from datetime import datetime

    data = plistlib.dumps(
        {"blob": b"\x00\x01", "when": datetime(2024, 1, 2, 3, 4, 5), "n": 1},
        fmt=plistlib.FMT_XML,
    )
    res = run_cascade(data, filename="p.plist")
    assert res.parser_id == "plist_xml"
    assert res.tree["blob"] == "base64:AAE="
    assert res.tree["when"].startswith("2024-01-02T03:04:05")
    assert res.is_fallback is False


def test_binary_plist() -> None:
    data = plistlib.dumps({"PayloadContent": [{"SSID_STR": "Corp"}]}, fmt=plistlib.FMT_BINARY)
    res = run_cascade(data, filename="p.mobileconfig")
    assert res.parser_id == "plist_binary"
    assert res.tree["PayloadContent"][0]["SSID_STR"] == "Corp"


def test_signed_profile_span_is_extracted() -> None:
    inner = plistlib.dumps({"PayloadIdentifier": "com.example.wifi"}, fmt=plistlib.FMT_XML)
    data = b"\x30\x80\x06\x09\x2a\x86\x00\x00" + b"\x01" * 40 + inner + b"\xa0\x00\x00\x31"
    res = run_cascade(data, filename="signed.mobileconfig")
    assert res.tree == {"PayloadIdentifier": "com.example.wifi"}
    assert res.parser_id == "plist_xml"


def test_truncated_plist_is_repaired() -> None:
    res = run_cascade(TRUNCATED_PLIST, filename="profile.plist")
    assert res.parser_id == "plist_repaired"
    assert res.tree == {"PayloadDisplayName": "Corp WiFi", "Password": "hunter22"}
    assert any(a.strategy == "plist_xml" and not a.ok for a in res.attempts)


def test_malformed_doctype_and_unknown_entity_are_repaired() -> None:
    data = (
        b'<?xml version="1.0"?>\n'
        b"<!DOCTYPE plist PUBLIC -//Apple//DTD PLIST 1.0//EN http://www.apple.com/DTDs/PropertyList-1.0.dtd>\n"
        b'<plist version="1.0"><dict><key>Name</key><string>A&nbsp;B</string></dict></plist>'
    )
    res = run_cascade(data, filename="bad.plist")
    assert res.parser_id == "plist_repaired"
    assert res.tree == {"Name": "A&nbsp;B"}


def test_generic_xml_tree_shape() -> None:
    data = (
        b'<?xml version="1.0"?>'
        b'<WLANProfile xmlns="http://www.microsoft.com/networking/WLAN/profile/v1">'
        b"<name>Corp</name>"
        b'<SSIDConfig><SSID><name>Corp</name></SSID><SSID><name>Guest</name></SSID></SSIDConfig>'
        b'<sharedKey protected="false"><keyMaterial>secret</keyMaterial></sharedKey>'
        b"</WLANProfile>"
    )
    res = run_cascade(data, filename="wlan.xml")
    assert res.parser_id == "xml_tree"
    root = res.tree["WLANProfile"]
    assert root["name"] == "Corp"
    assert [s["name"] for s in root["SSIDConfig"]["SSID"]] == ["Corp", "Guest"]
    assert root["sharedKey"] == {"protected": "false", "keyMaterial": "secret"}


def test_xml_entity_declarations_are_rejected() -> None:
    data = (
        b'<?xml version="1.0"?><!DOCTYPE r [<!ENTITY a "aaaaaaaaaa">]>'
        b"<r>&a;&a;&a;</r>"
    )
    res = run_cascade(data, filename="bomb.xml")
    assert res.parser_id != "xml_tree"


def test_base64_wrapped_plist() -> None:
    inner = plistlib.dumps({"SSID_STR": "Corp"}, fmt=plistlib.FMT_XML)
    wrapped = base64.encodebytes(inner)
    res = run_cascade(wrapped, filename="profile.txt")
    assert res.parser_id == "base64_xml"
    assert res.tree == {"SSID_STR": "Corp"}


def test_base64_multipart_body_with_embedded_plist() -> None:
    inner = plistlib.dumps({"SSID_STR": "Corp"}, fmt=plistlib.FMT_XML)
    body = (
        b"--boundary\r\nContent-Type: application/x-apple-aspen-config\r\n\r\n"
        + inner
        + b"\r\n--boundary--\r\n"
    )
    res = run_cascade(base64.b64encode(body), filename="download.bin")
    assert res.parser_id == "base64_xml"
    assert res.tree == {"SSID_STR": "Corp"}


def test_json_and_yaml() -> None:
    assert run_cascade(b'{"a": [1, 2]}', filename="x.json").tree == {"a": [1, 2]}
    res = run_cascade(b"passpoint:\n  realm: example.com\n", filename="x.yml")
    assert res.parser_id == "yaml"
    assert res.tree == {"passpoint": {"realm": "example.com"}}


def test_yaml_scalar_is_not_structural() -> None:
    res = run_cascade(b"just a sentence", filename="x.yaml")
    assert res.is_fallback is True


def test_keyvalue_with_sections() -> None:
    data = b"# comment\nssid=Corp\n[eap]\nmethod = PEAP\nidentity: alice\n; trailing\n"
    res = run_cascade(data, filename="wifi.conf")
    assert res.parser_id == "keyvalue"
    assert res.tree == {"ssid": "Corp", "eap": {"method": "PEAP", "identity": "alice"}}


@pytest.mark.parametrize(
    "data",
    [b"", b"abc", os.urandom(512), TRUNCATED_PLIST[:60], b"\x00" * 64, b"<a><b>", b"bplist00\xff\xff"],
)
def test_cascade_never_raises(data: bytes) -> None:
    res = run_cascade(data, filename="input.mobileconfig")
    assert res.tree is not None
    assert isinstance(res.tree, (dict, list))


def test_fallback_shape() -> None:
    res = run_cascade(b"abc", filename="tiny.mobileconfig")
    assert res.is_fallback is True
    assert res.parser_id == "diagnostic_fallback"
    assert set(res.tree) == {"fileInfo", "rawContentPreview", "binaryInfo"}
    assert res.tree["fileInfo"]["sizeBytes"] == 3
    assert res.tree["rawContentPreview"] == "abc"
    assert len(res.errors) >= 1


def test_timed_out_attempt_is_abandoned() -> None:
    release = threading.Event()

    def slow(inp):
        release.wait(5)
        return {"late": True}

    def good(inp):
        return {"ok": True}

    try:
        res = run_cascade(
            b"anything",
            filename="x.txt",
            timeout_seconds=0.05,
            strategies=[ParseStrategy("slow", slow), ParseStrategy("good", good)],
        )
    finally:
        release.set()

    assert res.parser_id == "good"
    assert res.attempts[0].strategy == "slow"
    assert res.attempts[0].ok is False
    assert "ParseTimeoutError" in res.attempts[0].error


def test_strategy_order_prefers_sniffed_type() -> None:
    names = [s.name for s in strategies_for(FileType.JSON)]
    assert names[:2] == ["json", "yaml"]
    assert len(names) == len(set(names))
    assert "diagnostic_fallback" not in names


def _alias_bomb(levels: int = 9, fanout: int = 10) -> bytes:
    lines = ["l0: &l0 [" + ", ".join(["x"] * fanout) + "]"]
    for level in range(1, levels):
        refs = ", ".join([f"*l{level - 1}"] * fanout)
        lines.append(f"l{level}: &l{level} [{refs}]")
    return ("\n".join(lines) + "\n").encode("ascii")


def test_yaml_alias_bomb_stops_at_node_budget() -> None:
    res = run_cascade(_alias_bomb(), filename="bomb.yaml", timeout_seconds=10.0)
    yaml_attempt = next(a for a in res.attempts if a.strategy == "yaml")
    assert yaml_attempt.ok is False
    assert "too many nodes" in yaml_attempt.error
    assert "ParseTimeoutError" not in yaml_attempt.error

    for worker in threading.enumerate():
        if worker.name.startswith("confnorm-"):
            worker.join(timeout=2.0)
    assert not [t.name for t in threading.enumerate() if t.name.startswith("confnorm-")]


def test_tree_budget_bounds_nodes_and_depth() -> None:
    shared = ["x"] * 10
    with pytest.raises(ParseError):
        to_parse_tree([shared] * 10, TreeBudget(max_nodes=50))
    assert len(to_parse_tree([shared] * 10, TreeBudget(max_nodes=200))) == 10

    loop: list = []
    loop.append(loop)
    with pytest.raises(ParseError, match="nesting too deep"):
        to_parse_tree(loop)
