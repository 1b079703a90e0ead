from __future__ import annotations

import json
from pathlib import Path

import yaml

from confnorm.cli.main import main


def test_cli_convert_yaml(tmp_path: Path, capsys) -> None:
    p = tmp_path / "wifi.conf"
    p.write_text("ssid=Corp\npsk=supersecret\n", encoding="utf-8")
    assert main(["convert", str(p), "--field-policy", "length"]) == 0
    out = capsys.readouterr().out
    assert yaml.safe_load(out) == {"ssid": "Corp", "psk": "[LENGTH-11-CHARS]"}


def test_cli_convert_result_to_file(tmp_path: Path, capsys) -> None:
    p = tmp_path / "profile.mobileconfig"
    p.write_bytes(b"abc")
    out_file = tmp_path / "out.json"
    assert main(["convert", str(p), "--format", "result", "--out", str(out_file)]) == 0
    result = json.loads(out_file.read_text(encoding="utf-8"))
    assert result["notes"]["is_fallback"] is True
    assert "empty_file" in capsys.readouterr().err


def test_cli_convert_missing_file(tmp_path: Path, capsys) -> None:
    assert main(["convert", str(tmp_path / "nope.yaml")]) == 2
    assert "file not found" in capsys.readouterr().err


def test_cli_convert_archive_failure(tmp_path: Path, capsys) -> None:
    import zipfile

    p = tmp_path / "bundle.zip"
    with zipfile.ZipFile(p, "w") as zf:
        zf.writestr("theme.xml", "<theme/>")
    assert main(["convert", str(p)]) == 3
    assert "\"archive_resolution_failed\"" in capsys.readouterr().err


def test_cli_sniff_and_alerts(tmp_path: Path, capsys) -> None:
    p = tmp_path / "profile.plist"
    p.write_text('<?xml version="1.0"?>\n<plist version="1.0">\n<dict>\n</dict>\n', encoding="utf-8")
    assert main(["sniff", str(p)]) == 0
    assert json.loads(capsys.readouterr().out)["file_type"] == "xml_plist"
    assert main(["alerts", str(p)]) == 0
    kinds = [a["kind"] for a in json.loads(capsys.readouterr().out)]
    assert kinds == ["incomplete_xml"]


def test_cli_sweep(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setenv("CONFNORM_UPLOAD_DIR", str(tmp_path / "up"))
    monkeypatch.setenv("CONFNORM_ALT_UPLOAD_DIR", str(tmp_path / "alt"))
    assert main(["sweep", "--max-age", "60"]) == 0
    assert json.loads(capsys.readouterr().out)["removed"] == 0
