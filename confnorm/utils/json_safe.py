from __future__ import annotations

import base64
import json
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

BYTES_MARKER = "base64:"


def _encode_bytes(raw: bytes) -> str:
    return BYTES_MARKER + base64.b64encode(raw).decode("ascii")


def to_jsonable(obj: Any) -> Any:
    """Reduce result objects (notes, metadata, alerts) to plain JSON values.

    - Enum members become their wire value (policy names, alert kinds).
    - bytes carry the same `base64:` marker the parse tree uses, so redaction
      recognises them as already encoded.
    - Objects exposing `to_dict()` are trusted to describe themselves.

    Security notes:
    - Never imports or evaluates anything; unknown objects fall back to `str()`.

    """

    if isinstance(obj, Enum):
        return to_jsonable(obj.value)
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return _encode_bytes(bytes(obj))
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Path):
        return obj.as_posix()

    describe = getattr(obj, "to_dict", None)
    if callable(describe) and not isinstance(obj, type):
        return to_jsonable(describe())
    if is_dataclass(obj) and not isinstance(obj, type):
        return to_jsonable(asdict(obj))

    if isinstance(obj, Mapping):
        return {str(key): to_jsonable(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_jsonable(item) for item in obj]
    return str(obj)


def dumps(obj: Any, *, indent: int = 2, sort_keys: bool = False) -> str:
    """`json.dumps` that accepts anything `to_jsonable` understands."""

    return json.dumps(obj, indent=indent, sort_keys=sort_keys, ensure_ascii=False, default=to_jsonable)
