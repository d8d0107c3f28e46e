"""
Request orchestration:

    validate -> fetch metadata -> build invocation -> execute
             -> resolve artifact -> respond

for the three target kinds (single video, audio, playlist). Downloads of
the same target are serialized: a duplicate request queues until the
previous one, including its cleanup sweeps, has finished.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ytgrab import ytdlp
from ytgrab.artifacts import FALLBACK_NAME, find_artifacts, sanitize_filename
from ytgrab.cache import InfoCache
from ytgrab.config import Limits, Settings
from ytgrab.errors import (
    ArtifactNotFound,
    FetchError,
    MissingInput,
    OutputTooLarge,
    ProcessFailed,
    ProcessTimeout,
    UnsupportedTarget,
    summarize_stderr,
)
from ytgrab.formats import AUDIO_SELECTOR, FormatTable
from ytgrab.runner import Invocation, ProcessResult, ProcessRunner
from ytgrab.sweeper import SweepJob, SweepPlan, Sweeper

log = logging.getLogger(__name__)

PLAYLIST_REJECTED = 'This is a playlist URL. Please select "Entire Playlist" as download type.'


class TargetKind(str, Enum):
    SINGLE = "video"
    AUDIO = "audio"
    COLLECTION = "playlist"

    @classmethod
    def parse(cls, value: Optional[str]) -> "TargetKind":
        """Unknown or missing kinds download as a single video."""
        try:
            return cls((value or cls.SINGLE.value).strip().lower())
        except ValueError:
            return cls.SINGLE


class KeyedLock:
    """One holder per key. Release may happen on a different thread."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}  # key -> [Lock, holders + waiters]

    def acquire(self, key: str) -> None:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()

    def release(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]
        entry[0].release()

    def busy(self) -> int:
        with self._guard:
            return len(self._locks)


def _human(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute" + ("s" if minutes != 1 else "")
    return f"{seconds:g} seconds"


def _output_name(title: str, url: str) -> str:
    """Sanitized title; untitled targets get a name derived from their URL."""
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:10]
    return sanitize_filename(title, fallback=f"{FALLBACK_NAME}_{digest}")


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        runner: Optional[ProcessRunner] = None,
        cache: Optional[InfoCache] = None,
        sweeper: Optional[Sweeper] = None,
        formats: Optional[FormatTable] = None,
        settle_interval: float = 0.25,
    ) -> None:
        self.settings = settings
        self.runner = runner or ProcessRunner()
        self.cache = cache or InfoCache(ttl=settings.cache_ttl)
        self.sweeper = sweeper or Sweeper()
        self.formats = formats or FormatTable.load(settings.formats_file)
        self.locks = KeyedLock()
        self.settle_interval = settle_interval

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _require(url: Any) -> str:
        if not isinstance(url, str) or not url.strip():
            raise MissingInput("URL is required")
        return ytdlp.to_target_url(url)

    def _invocation(self, args: List[str], limits: Limits) -> Invocation:
        return Invocation.build(self.settings.ytdlp_command, args, limits)

    def _execute(
        self,
        invocation: Invocation,
        label: str,
        too_large: str,
        cancel: Optional[threading.Event] = None,
    ) -> ProcessResult:
        result = self.runner.run(invocation, cancel)
        self._raise_for(result, invocation, label, too_large)
        return result

    @staticmethod
    def _raise_for(
        result: ProcessResult,
        invocation: Invocation,
        label: str,
        too_large: Optional[str] = None,
    ) -> None:
        """Translate a failed result into a caller-facing error."""
        try:
            result.raise_for_status()
        except OutputTooLarge:
            raise OutputTooLarge(too_large or f"{label} produced too much output") from None
        except ProcessTimeout:
            raise ProcessTimeout(f"{label} timeout after {_human(invocation.timeout)}") from None
        except ProcessFailed as e:
            detail = summarize_stderr(e.stderr) if e.stderr else e.message
            raise ProcessFailed(f"{label} failed: {detail}", e.stderr, e.returncode) from None

    # -- metadata ------------------------------------------------------------

    def info(self, url: Any) -> Dict[str, Any]:
        url = self._require(url)
        if ytdlp.is_collection(url):
            return {"type": "playlist", "data": self.playlist_info(url)}
        return {"type": "video", "data": self.video_info(url).to_dict()}

    def video_info(self, url: str) -> ytdlp.VideoInfo:
        if ytdlp.is_collection(url):
            raise UnsupportedTarget(PLAYLIST_REJECTED)
        return self.cache.get_or_fetch(("video", url), lambda: self._fetch_video_info(url))

    def _fetch_video_info(self, url: str) -> ytdlp.VideoInfo:
        log.info("Getting video info for: %s", url)
        result = self._execute(
            self._invocation(ytdlp.info_args(url), self.settings.info_limits),
            label="Video info",
            too_large="Video info too large. Try a different video or check if it's a very long video.",
        )
        info = ytdlp.parse_video_info(result.stdout)
        log.info("Successfully got video info: %s", info.title)
        return info

    def playlist_info(self, url: str) -> Dict[str, Any]:
        return self.cache.get_or_fetch(("playlist", url), lambda: self._fetch_playlist_info(url))

    def _fetch_playlist_info(self, url: str) -> Dict[str, Any]:
        log.info("Getting playlist info for: %s", url)
        result = self._execute(
            self._invocation(ytdlp.playlist_info_args(url), self.settings.playlist_info_limits),
            label="Playlist info",
            too_large="Playlist too large. Try a smaller playlist or individual videos.",
        )
        entries = ytdlp.parse_playlist_entries(result.stdout)
        title = ytdlp.playlist_title_from(entries) or self._fetch_playlist_title(url)
        title = title or "YouTube Playlist"
        log.info("Successfully got playlist info: %s (%d videos)", title, len(entries))
        return {"title": title, "entries": entries}

    def _fetch_playlist_title(self, url: str) -> Optional[str]:
        invocation = self._invocation(ytdlp.playlist_title_args(url), self.settings.playlist_title_limits)
        try:
            result = self._execute(invocation, label="Playlist title", too_large="Playlist title too large")
        except FetchError as e:
            # cosmetic only; the caller falls back to a generic title
            log.warning("Could not get playlist title: %s", e)
            return None
        lines = [ln.strip() for ln in result.stdout.splitlines() if ln.strip()]
        return lines[0] if lines else None

    def list_formats(self, url: Any) -> Dict[str, Any]:
        url = self._require(url)
        result = self._execute(
            self._invocation(ytdlp.formats_args(url), self.settings.formats_limits),
            label="Format listing",
            too_large="Format listing too large.",
        )
        return {
            "formats": self.formats.menu(),
            "availableFormats": ytdlp.parse_format_listing(result.stdout),
            "rawOutput": result.stdout,
        }

    # -- downloads -----------------------------------------------------------

    def download(
        self,
        url: Any,
        kind: Any = TargetKind.SINGLE,
        quality: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        url = self._require(url)
        kind = kind if isinstance(kind, TargetKind) else TargetKind.parse(kind)

        if kind is TargetKind.COLLECTION:
            return self._download_playlist(url, quality, cancel)

        info = self.video_info(url)
        prefix = _output_name(info.title, url)
        template = str(self.settings.downloads_dir / f"{prefix}.%(ext)s")

        if kind is TargetKind.AUDIO:
            args = ytdlp.audio_download_args(AUDIO_SELECTOR, template, url)
            limits, final_ext, label = self.settings.audio_limits, ".mp3", "Audio download"
            missing = "Audio download completed but file not found"
        else:
            selector = self.formats.selector(quality)
            log.info("Quality %r -> tier %s", quality, self.formats.tier(quality))
            args = ytdlp.video_download_args(selector, template, url)
            limits, final_ext, label = self.settings.video_limits, ".mp4", "Download"
            missing = "Download completed but MP4 file not found"

        plan = SweepPlan(
            directory=self.settings.downloads_dir,
            prefix=prefix,
            final_ext=final_ext,
            delays=self.settings.sweep_delays,
            final_delay=self.settings.final_sweep_delay,
        )
        job = self._supervised(self._invocation(args, limits), plan, label, cancel)
        artifact = self._await_artifact(job, missing)

        response = {
            "success": True,
            "filename": artifact.name,
            "downloadUrl": f"/downloads/{artifact.name}",
        }
        if kind is TargetKind.SINGLE:
            response["message"] = f"Successfully downloaded: {artifact.name}"
        return response

    def _download_playlist(
        self, url: str, quality: Optional[str], cancel: Optional[threading.Event]
    ) -> Dict[str, Any]:
        info = self.playlist_info(url)
        folder = _output_name(info["title"], url)
        directory = self.settings.downloads_dir / folder
        directory.mkdir(parents=True, exist_ok=True)

        template = str(directory / "%(title)s.%(ext)s")
        args = ytdlp.playlist_download_args(self.formats.selector(quality), template, url)
        log.info(
            "Playlist: %s (%d videos) in %s quality",
            info["title"], len(info["entries"]), self.formats.tier(quality),
        )

        # the folder is the request's own, so every leftover in it is fair game
        plan = SweepPlan(
            directory=directory,
            prefix=None,
            final_ext=".mp4",
            delays=self.settings.playlist_sweep_delays,
        )
        self._supervised(self._invocation(args, self.settings.playlist_limits), plan,
                         "Playlist download", cancel)

        downloaded = find_artifacts(directory, None, ".mp4")
        return {
            "success": True,
            "message": f"Playlist download completed! Downloaded {len(downloaded)} videos.",
            "folder": folder,
            "totalVideos": len(info["entries"]),
            "downloadedVideos": len(downloaded),
            "folderPath": str(directory),
        }

    def _supervised(
        self,
        invocation: Invocation,
        plan: SweepPlan,
        label: str,
        cancel: Optional[threading.Event],
    ) -> SweepJob:
        """
        Run ``invocation`` holding the lock for its output location. Sweeps
        are scheduled whatever the outcome and the lock is released only when
        they finish.

        Requests that would write the same files share a key even when their
        URLs differ (``youtu.be/X`` vs ``watch?v=X``, or equal titles).
        """
        key = str(plan.directory / plan.prefix) if plan.prefix else str(plan.directory)
        self.locks.acquire(key)
        job = None
        try:
            result = None
            try:
                result = self.runner.run(invocation, cancel)
            finally:
                job = self.sweeper.schedule(plan, on_done=lambda _job: self.locks.release(key))
            self._raise_for(result, invocation, label)
            return job
        finally:
            if job is None:
                self.locks.release(key)

    def _await_artifact(self, job: SweepJob, missing: str) -> Path:
        """
        The merged file can show up after yt-dlp exits; keep looking until
        the sweep job has run its last pass.
        """
        plan = job.plan
        while True:
            finished = job.done.is_set()
            matches = find_artifacts(plan.directory, plan.prefix, plan.final_ext)
            if matches:
                return matches[0]
            if finished:
                raise ArtifactNotFound(missing)
            job.done.wait(self.settle_interval)

    def health(self) -> Dict[str, Any]:
        return {
            "active_processes": self.runner.active,
            "active_downloads": self.locks.busy(),
            "cached_info": len(self.cache),
            "pending_sweeps": self.sweeper.pending,
        }

    def shutdown(self) -> None:
        self.runner.shutdown()
        self.sweeper.shutdown()
