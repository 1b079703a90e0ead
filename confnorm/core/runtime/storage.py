from __future__ import annotations

import logging
import os
import re
import secrets
import time
from pathlib import Path
from typing import List, Optional, Protocol

from confnorm.core.errors import StorageError

log = logging.getLogger("confnorm.storage")

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_TOKEN_RE = re.compile(r"^\d+-[0-9a-f]{8}-[A-Za-z0-9._-]+$")
PART_SUFFIX = ".part"


def sanitize_basename(name: Optional[str]) -> str:
    """Reduce an untrusted client filename to a safe basename."""

    base = os.path.basename((name or "").replace("\\", "/")) or "upload"
    base = _UNSAFE_NAME_CHARS.sub("_", base).strip("._") or "upload"
    return base[:120]


def new_token(original_name: Optional[str]) -> str:
    """`<epoch-ms>-<8 hex>-<sanitized basename>`"""

    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}-{sanitize_basename(original_name)}"


def is_valid_token(token: str) -> bool:
    return bool(_TOKEN_RE.match(token or "")) and ".." not in token


def _is_sweepable(name: str) -> bool:
    """A stored upload, or the `.<token>.part` left behind by an interrupted write."""

    if name.startswith(".") and name.endswith(PART_SUFFIX):
        name = name[1 : -len(PART_SUFFIX)]
    return is_valid_token(name)


def original_name_from_token(token: str) -> str:
    """Recover the sanitized client basename embedded in a token."""

    parts = token.split("-", 2)
    return parts[2] if len(parts) == 3 else token


def read_upload(path: str, *, token: Optional[str] = None) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise StorageError(
            f"Failed to read upload: {e}",
            details={"file_token": token, "path": path, "cause": type(e).__name__},
        ) from e


class UploadStore(Protocol):
    """Where uploads live between the upload and the conversion request."""

    def put(self, data: bytes, original_name: Optional[str]) -> str: ...

    def exists(self, token: str) -> bool: ...

    def get(self, token: str) -> bytes: ...

    def sweep(self, max_age_seconds: float) -> int: ...

    def candidates(self, token: str) -> List[str]: ...


class LocalUploadStore:
    """Upload store on the local filesystem.

    Writes go to `root`. Reads consider `root` first and `alternate_root` second:
    on some hosts the writer only has a temp directory while the reader still
    looks in the project directory.

    Security notes:
    - Tokens are validated against a strict pattern; no path traversal.
    - Conversion never deletes uploads; only `sweep` does.

    """

    def __init__(self, root: Path, alternate_root: Optional[Path] = None):
        self.root = Path(root)
        self.alternate_root = Path(alternate_root) if alternate_root else None

    def _check_token(self, token: str) -> None:
        if not is_valid_token(token):
            raise StorageError("Invalid file token", details={"file_token": token})

    def candidates(self, token: str) -> List[str]:
        self._check_token(token)
        out = [str(self.root / token)]
        if self.alternate_root is not None and self.alternate_root != self.root:
            out.append(str(self.alternate_root / token))
        return out

    def put(self, data: bytes, original_name: Optional[str]) -> str:
        token = new_token(original_name)
        target = self.root / token
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{token}{PART_SUFFIX}")
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as e:
            raise StorageError(
                f"Failed to store upload: {e}",
                details={"file_token": token, "size_bytes": len(data), "cause": type(e).__name__},
            ) from e
        log.info("upload_stored", extra={"file_token": token, "size_bytes": len(data)})
        return token

    def exists(self, token: str) -> bool:
        return any(os.path.isfile(p) for p in self.candidates(token))

    def get(self, token: str) -> bytes:
        for path in self.candidates(token):
            if not os.path.isfile(path):
                continue
            return read_upload(path, token=token)
        raise StorageError("Upload not found", details={"file_token": token, "candidates": self.candidates(token)})

    def sweep(self, max_age_seconds: float) -> int:
        """Delete uploads older than `max_age_seconds` from both roots.

        Stale `.part` files from interrupted writes are removed under the same age
        rule. Files vanishing between listing and deletion are ignored.
        """

        cutoff = time.time() - max_age_seconds
        removed = 0
        roots = [self.root] + ([self.alternate_root] if self.alternate_root is not None else [])
        for root in roots:
            if not root.is_dir():
                continue
            for entry in root.iterdir():
                if not _is_sweepable(entry.name):
                    continue
                try:
                    if entry.stat().st_mtime < cutoff:
                        entry.unlink()
                        removed += 1
                except FileNotFoundError:
                    continue
        log.info("uploads_swept", extra={"removed": removed, "max_age_seconds": max_age_seconds})
        return removed
