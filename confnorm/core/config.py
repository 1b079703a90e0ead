from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

_DEFAULT_UPLOAD_DIR = Path(__file__).resolve().parents[2] / "var" / "uploads"


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable.

    Security notes:
    - Env vars are treated as trusted server configuration.

    """

    raw = os.environ.get(name, "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Configuration for storage, parsing and alerting.

    The upload directory and the alternate directory model the two storage
    locations a writer and a reader process may disagree on (for example a
    project-local directory versus the system temp directory on serverless hosts).

    """

    upload_dir: Path = _DEFAULT_UPLOAD_DIR
    alternate_upload_dir: Path = Path(tempfile.gettempdir()) / "confnorm_uploads"
    retention_seconds: int = 3600
    parse_timeout_seconds: float = 30.0
    max_upload_bytes: int = 25 * 1024 * 1024
    tag_balance_tolerance: int = 20
    retry_max_attempts: int = 10

    @staticmethod
    def from_env() -> "PipelineConfig":
        """Create a config from environment variables.

        - CONFNORM_UPLOAD_DIR
        - CONFNORM_ALT_UPLOAD_DIR
        - CONFNORM_RETENTION_SEC (default 3600)
        - CONFNORM_PARSE_TIMEOUT_SEC (default 30)
        - CONFNORM_MAX_UPLOAD_BYTES (default 25MB)
        - CONFNORM_TAG_BALANCE_TOLERANCE (default 20)
        - CONFNORM_RETRY_MAX_ATTEMPTS (default 10)

        """

        upload_raw = os.environ.get("CONFNORM_UPLOAD_DIR", "").strip()
        alt_raw = os.environ.get("CONFNORM_ALT_UPLOAD_DIR", "").strip()
        defaults = PipelineConfig()
        return PipelineConfig(
            upload_dir=Path(upload_raw) if upload_raw else defaults.upload_dir,
            alternate_upload_dir=Path(alt_raw) if alt_raw else defaults.alternate_upload_dir,
            retention_seconds=max(1, _env_int("CONFNORM_RETENTION_SEC", defaults.retention_seconds)),
            parse_timeout_seconds=max(
                0.1, _env_float("CONFNORM_PARSE_TIMEOUT_SEC", defaults.parse_timeout_seconds)
            ),
            max_upload_bytes=max(1, _env_int("CONFNORM_MAX_UPLOAD_BYTES", defaults.max_upload_bytes)),
            tag_balance_tolerance=max(
                0, _env_int("CONFNORM_TAG_BALANCE_TOLERANCE", defaults.tag_balance_tolerance)
            ),
            retry_max_attempts=max(1, _env_int("CONFNORM_RETRY_MAX_ATTEMPTS", defaults.retry_max_attempts)),
        )
