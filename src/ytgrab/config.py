"""
Runtime configuration, read once from the environment.

Environment variables:
  PORT / HOST               - listen address (default 0.0.0.0:5000)
  YTGRAB_DOWNLOADS_DIR      - where artifacts land (default ~/Downloads)
  YTGRAB_YTDLP              - explicit yt-dlp executable
  YTGRAB_FORMATS_FILE       - JSON file overriding quality tiers
  YTGRAB_CACHE_TTL          - metadata cache retention in seconds (default 300)
  LOG_LEVEL                 - logging level name (default INFO)
"""

from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

MIB = 1024 * 1024


@dataclass(frozen=True)
class Limits:
    """Resource limits for one class of invocation."""

    timeout: float
    max_output_bytes: int


# Tier choice belongs to the caller, never to the process runner.
INFO_LIMITS = Limits(timeout=30, max_output_bytes=10 * MIB)
PLAYLIST_INFO_LIMITS = Limits(timeout=30, max_output_bytes=20 * MIB)
PLAYLIST_TITLE_LIMITS = Limits(timeout=15, max_output_bytes=2 * MIB)
FORMATS_LIMITS = Limits(timeout=30, max_output_bytes=10 * MIB)
VIDEO_LIMITS = Limits(timeout=600, max_output_bytes=100 * MIB)
AUDIO_LIMITS = Limits(timeout=600, max_output_bytes=10 * MIB)
PLAYLIST_LIMITS = Limits(timeout=1800, max_output_bytes=200 * MIB)


def find_ytdlp_command(explicit: Optional[str] = None) -> Tuple[str, ...]:
    """Resolve the command prefix used to launch yt-dlp."""
    if explicit:
        return (explicit,)

    in_path = shutil.which("yt-dlp")
    if in_path:
        return (in_path,)

    # The yt-dlp distribution is a dependency, so its module is importable
    return (sys.executable, "-m", "yt_dlp")


@dataclass(frozen=True)
class Settings:
    downloads_dir: Path
    ytdlp_command: Tuple[str, ...] = ("yt-dlp",)
    formats_file: Optional[Path] = None
    cache_ttl: float = 300.0
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    info_limits: Limits = INFO_LIMITS
    playlist_info_limits: Limits = PLAYLIST_INFO_LIMITS
    playlist_title_limits: Limits = PLAYLIST_TITLE_LIMITS
    formats_limits: Limits = FORMATS_LIMITS
    video_limits: Limits = VIDEO_LIMITS
    audio_limits: Limits = AUDIO_LIMITS
    playlist_limits: Limits = PLAYLIST_LIMITS

    # Seconds after process exit; merge/mux steps of yt-dlp can lag behind it.
    sweep_delays: Tuple[float, ...] = (3.0, 5.0, 8.0)
    final_sweep_delay: float = 10.0
    playlist_sweep_delays: Tuple[float, ...] = (5.0,)

    rate_limits: Mapping[str, str] = field(default_factory=lambda: {
        "default": "100 per minute",
        "download": "10 per minute",
        "info": "30 per minute",
        "health": "30 per minute",
    })

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        downloads = env.get("YTGRAB_DOWNLOADS_DIR") or str(Path.home() / "Downloads")
        formats_file = env.get("YTGRAB_FORMATS_FILE")

        return cls(
            downloads_dir=Path(downloads).expanduser().resolve(),
            ytdlp_command=find_ytdlp_command(env.get("YTGRAB_YTDLP")),
            formats_file=Path(formats_file).expanduser() if formats_file else None,
            cache_ttl=float(env.get("YTGRAB_CACHE_TTL", "300")),
            host=env.get("HOST", "0.0.0.0"),
            port=int(env.get("PORT", "5000")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

    def ensure_dirs(self) -> None:
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
