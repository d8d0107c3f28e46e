"""
The yt-dlp command-line contract: argument lists for each mode and
parsers for what it prints. Nothing here starts a process.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ytgrab.errors import MalformedMetadata

log = logging.getLogger(__name__)

YOUTUBE_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
PLAUSIBLE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{12,}$")

PROGRESS_TEMPLATE = "download:%(progress.downloaded_bytes)s/%(progress.total_bytes)s"


def to_target_url(user_input: str) -> str:
    """
    Accepts:
      - full URL
      - bare video id (11 chars)
      - bare playlist id (12+ chars)
    Returns a URL-like string yt-dlp can handle.
    """
    s = (user_input or "").strip()

    if "://" in s or s.startswith("www."):
        return "https://" + s if s.startswith("www.") else s

    if YOUTUBE_VIDEO_ID_RE.match(s):
        return f"https://www.youtube.com/watch?v={s}"

    if PLAUSIBLE_ID_RE.match(s):
        return f"https://www.youtube.com/playlist?list={s}"

    return s


def is_collection(url: str) -> bool:
    """Playlist-like identifier; a pure string check, nothing is fetched."""
    return "playlist" in url or "list=" in url


# --- argument lists --------------------------------------------------------

def info_args(url: str) -> List[str]:
    return ["--dump-json", "--no-warnings", "--no-playlist", url]


def playlist_info_args(url: str) -> List[str]:
    return ["--dump-json", "--flat-playlist", "--no-warnings", url]


def playlist_title_args(url: str) -> List[str]:
    return ["--get-filename", "-o", "%(playlist_title)s", "--no-warnings", url]


def formats_args(url: str) -> List[str]:
    return ["-F", "--no-warnings", url]


def video_download_args(selector: str, output_template: str, url: str) -> List[str]:
    return [
        "-f", selector,
        "--merge-output-format", "mp4",
        "--audio-multistreams",
        "--no-keep-video",
        "--embed-metadata",
        "--add-metadata",
        "-o", output_template,
        "--no-warnings",
        url,
    ]


def audio_download_args(selector: str, output_template: str, url: str) -> List[str]:
    return [
        "-f", selector,
        "--extract-audio",
        "--audio-format", "mp3",
        "--audio-quality", "0",
        "-o", output_template,
        "--no-warnings",
        url,
    ]


def playlist_download_args(selector: str, output_template: str, url: str) -> List[str]:
    args = video_download_args(selector, output_template, url)
    # progress lines before the trailing URL
    return args[:-1] + ["--newline", "--progress-template", PROGRESS_TEMPLATE, url]


# --- output parsers --------------------------------------------------------

@dataclass(frozen=True)
class VideoInfo:
    title: str
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    uploader: Optional[str] = None
    view_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _json_lines(stdout: str) -> List[str]:
    return [line for line in (stdout or "").splitlines() if line.strip()]


def parse_video_info(stdout: str) -> VideoInfo:
    """``--dump-json`` output; with several objects the first one wins."""
    lines = _json_lines(stdout)
    if not lines:
        raise MalformedMetadata("yt-dlp failed to get video information. Please check if the URL is valid.")
    if len(lines) > 1:
        log.info("Found %d JSON objects, using the first one", len(lines))

    try:
        info = json.loads(lines[0])
    except json.JSONDecodeError as e:
        raise MalformedMetadata(
            "Failed to parse video information. The video might be restricted or unavailable."
        ) from e

    if not isinstance(info, dict) or not info.get("title"):
        raise MalformedMetadata(
            "Could not parse video information. The video might be private or unavailable."
        )

    return VideoInfo(
        title=info["title"],
        duration=info.get("duration"),
        thumbnail=info.get("thumbnail"),
        uploader=info.get("uploader"),
        view_count=info.get("view_count"),
    )


def parse_playlist_entries(stdout: str) -> List[Dict[str, Any]]:
    """``--flat-playlist`` output, one object per line; bad lines are skipped."""
    lines = _json_lines(stdout)
    if not lines:
        raise MalformedMetadata("No videos found in playlist. The playlist might be private or empty.")

    entries = []
    for line in lines:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            log.warning("Failed to parse playlist entry: %.200s", line)
            continue
        if isinstance(entry, dict):
            entries.append(entry)

    if not entries:
        raise MalformedMetadata(
            "Could not parse playlist information. The playlist might be restricted or unavailable."
        )
    return entries


def playlist_title_from(entries: List[Dict[str, Any]]) -> Optional[str]:
    for entry in entries:
        title = entry.get("playlist_title") or entry.get("playlist")
        if title:
            return str(title)
    return None


_FORMAT_LINE_RE = re.compile(r"^\d+")


def parse_format_listing(stdout: str) -> List[Dict[str, Any]]:
    """Rows of ``yt-dlp -F`` that describe mp4/webm/m4a formats."""
    formats = []
    for line in (stdout or "").splitlines():
        if not _FORMAT_LINE_RE.match(line):
            continue
        if not any(ext in line for ext in ("mp4", "webm", "m4a")):
            continue
        parts = line.split()
        formats.append({
            "formatId": parts[0],
            "ext": parts[1] if len(parts) > 1 else "",
            "resolution": parts[2] if len(parts) > 2 else "audio only",
            "hasAudio": "audio only" in line or "video only" not in line,
            "fullLine": line.strip(),
        })
    return formats
