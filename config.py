"""Runtime settings and logging setup for the ClipCutter service."""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

BASE_DIR = Path(__file__).resolve().parent


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read an integer from the environment, clamped to a lower bound."""
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(value, minimum)


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    temp_dir: Path = Field(default=BASE_DIR / "temp")
    static_dir: Path = Field(default=BASE_DIR / "static")
    retention_seconds: int = 30 * 60
    sweep_interval_seconds: int = 10 * 60
    # None disables the per-command timeout
    command_timeout: Optional[float] = 1800.0
    yt_dlp_bin: str = "yt-dlp"
    ffmpeg_bin: str = "ffmpeg"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        timeout = _env_int("COMMAND_TIMEOUT", 1800)
        return cls(
            host=os.getenv("HOST", "0.0.0.0") or "0.0.0.0",
            port=_env_int("PORT", 3000, minimum=1),
            temp_dir=Path(os.getenv("TEMP_DIR") or BASE_DIR / "temp"),
            static_dir=Path(os.getenv("STATIC_DIR") or BASE_DIR / "static"),
            retention_seconds=_env_int("TEMP_RETENTION_MINUTES", 30, minimum=1) * 60,
            sweep_interval_seconds=_env_int("CLEANUP_INTERVAL_MINUTES", 10, minimum=1) * 60,
            command_timeout=float(timeout) if timeout else None,
            yt_dlp_bin=os.getenv("YT_DLP_BIN") or "yt-dlp",
            ffmpeg_bin=os.getenv("FFMPEG_BIN") or "ffmpeg",
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
