from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from confnorm.core.alerts import AlertKind, detect_alerts
from confnorm.core.normalization import FieldTransformPolicy
from confnorm.utils.json_safe import dumps, to_jsonable


def test_to_jsonable_domain_values() -> None:
    alert = detect_alerts("profile.mobileconfig", None, b"")[0]
    out = to_jsonable(
        {
            "policy": FieldTransformPolicy.HASH,
            "kind": AlertKind.EMPTY_FILE,
            "raw": b"\x00\x01",
            "at": datetime(2024, 5, 1, tzinfo=UTC),
            "dir": Path("/tmp/uploads"),
            "alerts": (alert,),
            "paths": {"a"},
        }
    )
    assert out["policy"] == "hash"
    assert out["kind"] == "empty_file"
    assert out["raw"] == "base64:AAE="
    assert out["at"] == "2024-05-01T00:00:00+00:00"
    assert out["dir"] == "/tmp/uploads"
    assert out["alerts"][0]["kind"] == "empty_file"
    assert out["paths"] == ["a"]


def test_dumps_accepts_enums_and_keeps_unicode() -> None:
    text = dumps({"policy": FieldTransformPolicy.MASK, "name": "Café"})
    assert json.loads(text) == {"policy": "mask", "name": "Café"}
    assert "Café" in text
