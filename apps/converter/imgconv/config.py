"""Environment-driven settings for the conversion service."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .external import DEFAULT_TOOL_TIMEOUT_SEC
from .pipeline import MAX_BATCH_SIZE

RETENTION_SECONDS = 2 * 60 * 60


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    return value.strip() if value else default


def _env_optional(name: str) -> Optional[str]:
    value = os.environ.get(name)
    return value.strip() if value and value.strip() else None


@dataclass
class Settings:
    """Runtime configuration; see ``from_env`` for the variable names."""

    upload_dir: Path = Path("uploads")
    output_dir: Path = Path("converted")
    download_prefix: str = "/downloads"
    magick_binary: Optional[str] = None
    potrace_binary: Optional[str] = None
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT_SEC
    max_batch: int = MAX_BATCH_SIZE
    max_workers: int = 4
    retention_seconds: int = RETENTION_SECONDS
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Read ``IMGCONV_*`` variables, falling back to defaults on bad values."""
        return cls(
            upload_dir=Path(_env_str("IMGCONV_UPLOAD_DIR", "uploads")),
            output_dir=Path(_env_str("IMGCONV_OUTPUT_DIR", "converted")),
            download_prefix=_env_str("IMGCONV_DOWNLOAD_PREFIX", "/downloads").rstrip("/"),
            magick_binary=_env_optional("IMGCONV_MAGICK_BINARY"),
            potrace_binary=_env_optional("IMGCONV_POTRACE_BINARY"),
            tool_timeout=max(1.0, _env_float("IMGCONV_TOOL_TIMEOUT", DEFAULT_TOOL_TIMEOUT_SEC)),
            max_batch=max(1, _env_int("IMGCONV_MAX_BATCH", MAX_BATCH_SIZE)),
            max_workers=max(1, _env_int("IMGCONV_MAX_WORKERS", 4)),
            retention_seconds=max(60, _env_int("IMGCONV_RETENTION_SECONDS", RETENTION_SECONDS)),
            log_level=_env_str("IMGCONV_LOG_LEVEL", "INFO").upper(),
        )
