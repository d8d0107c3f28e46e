from __future__ import annotations

import dataclasses
import json
import threading
import time
from pathlib import Path
from typing import Dict, Optional

import pytest

from conftest import FakeRunner, failed, info_json, ok, write_into_folder, write_outputs
from ytgrab.config import Settings
from ytgrab.errors import (
    ArtifactNotFound,
    MalformedMetadata,
    MissingInput,
    OutputTooLarge,
    ProcessFailed,
    ProcessTimeout,
    UnsupportedTarget,
)
from ytgrab.orchestrator import KeyedLock, Orchestrator, TargetKind
from ytgrab.runner import ExitStatus, Invocation, ProcessResult

VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
PLAYLIST_URL = "https://www.youtube.com/playlist?list=PL0123456789"


def single_video(title: str = "My Video", files: Optional[Dict[str, int]] = None):
    files = {"mp4": 1000} if files is None else files

    def handler(inv: Invocation) -> ProcessResult:
        if "--dump-json" in inv.args:
            return ok(info_json(title))
        write_outputs(inv, files)
        return ok()

    return handler


def _names(directory: Path) -> set:
    return {p.name for p in directory.iterdir()}


def make(settings: Settings, handler) -> Orchestrator:
    return Orchestrator(settings, runner=FakeRunner(handler), settle_interval=0.01)


@pytest.mark.parametrize("url", [None, "", "   ", 42])
def test_missing_url(settings: Settings, url) -> None:
    orch = make(settings, single_video())

    with pytest.raises(MissingInput, match="URL is required"):
        orch.download(url)
    with pytest.raises(MissingInput):
        orch.info(url)
    assert orch.runner.calls == []


def test_video_download_returns_the_merged_file_and_sweeps(settings: Settings) -> None:
    orch = make(settings, single_video(files={"f137.mp4": 300, "f140.m4a": 100, "mp4": 1000, "webm": 50}))

    response = orch.download(VIDEO_URL, TargetKind.SINGLE, "1080p")

    assert response == {
        "success": True,
        "filename": "My_Video.mp4",
        "downloadUrl": "/downloads/My_Video.mp4",
        "message": "Successfully downloaded: My_Video.mp4",
    }
    assert orch.sweeper.wait(5)
    assert _names(settings.downloads_dir) == {"My_Video.mp4"}
    assert orch.locks.busy() == 0


def test_download_invocation_uses_the_quality_tier(settings: Settings) -> None:
    orch = make(settings, single_video())

    orch.download(VIDEO_URL, "video", "1080p")

    download = orch.runner.calls[-1]
    assert download.executable == "yt-dlp"
    assert download.args[:2] == ("-f", orch.formats.selector("1080p"))
    assert download.args[-1] == VIDEO_URL
    assert download.timeout == settings.video_limits.timeout
    assert download.max_output_bytes == settings.video_limits.max_output_bytes
    assert str(settings.downloads_dir / "My_Video.%(ext)s") in download.args
    orch.sweeper.wait(5)


def test_unknown_quality_uses_the_default_tier(settings: Settings) -> None:
    orch = make(settings, single_video())

    orch.download(VIDEO_URL, TargetKind.SINGLE, "ultra-mega-hd")

    assert orch.runner.calls[-1].args[1] == orch.formats.selector("720p")
    orch.sweeper.wait(5)


def test_metadata_is_cached_between_requests(settings: Settings) -> None:
    orch = make(settings, single_video())

    orch.info(VIDEO_URL)
    orch.download(VIDEO_URL)
    orch.sweeper.wait(5)
    orch.download(VIDEO_URL)
    orch.sweeper.wait(5)

    assert orch.runner.modes().count("--dump-json") == 1


def test_info_for_a_video(settings: Settings) -> None:
    orch = make(settings, single_video(title="Hello"))

    result = orch.info("dQw4w9WgXcQ")

    assert result["type"] == "video"
    assert result["data"]["title"] == "Hello"
    assert result["data"]["duration"] == 212
    assert orch.runner.calls[0].args[-1] == VIDEO_URL
    assert "--no-playlist" in orch.runner.calls[0].args


def test_playlist_url_on_the_single_item_path_is_rejected(settings: Settings) -> None:
    orch = make(settings, single_video())

    with pytest.raises(UnsupportedTarget, match="Entire Playlist"):
        orch.download(PLAYLIST_URL, TargetKind.SINGLE)
    with pytest.raises(UnsupportedTarget):
        orch.download(PLAYLIST_URL, TargetKind.AUDIO)
    assert orch.runner.calls == []


def test_audio_download(settings: Settings) -> None:
    orch = make(settings, single_video(files={"webm": 900, "mp3": 500}))

    response = orch.download(VIDEO_URL, TargetKind.AUDIO)

    assert response == {
        "success": True,
        "filename": "My_Video.mp3",
        "downloadUrl": "/downloads/My_Video.mp3",
    }
    download = orch.runner.calls[-1]
    assert "--extract-audio" in download.args
    assert download.args[:2] == ("-f", "bestaudio")
    orch.sweeper.wait(5)
    assert _names(settings.downloads_dir) == {"My_Video.mp3"}


def test_download_timeout_message(settings: Settings) -> None:
    def handler(inv: Invocation) -> ProcessResult:
        if "--dump-json" in inv.args:
            return ok(info_json("Slow"))
        write_outputs(inv, {"mp4.part": 10})
        return ProcessResult(ExitStatus.TIMEOUT, -15, "", "", 600.0)

    orch = make(settings, handler)

    with pytest.raises(ProcessTimeout, match="Download timeout after 10 minutes"):
        orch.download(VIDEO_URL)

    # partials are still swept and the key is released afterwards
    assert orch.sweeper.wait(5)
    assert _names(settings.downloads_dir) == set()
    assert orch.locks.busy() == 0


def test_download_failure_carries_stderr(settings: Settings) -> None:
    def handler(inv: Invocation) -> ProcessResult:
        if "--dump-json" in inv.args:
            return ok(info_json("Gone"))
        return failed("WARNING: something\nERROR: [youtube] dQw4w9WgXcQ: Video unavailable")

    orch = make(settings, handler)

    with pytest.raises(ProcessFailed, match="Download failed: .*Video unavailable") as excinfo:
        orch.download(VIDEO_URL)
    assert "Video unavailable" in excinfo.value.stderr
    orch.sweeper.wait(5)


def test_successful_exit_without_artifact(settings: Settings) -> None:
    orch = make(settings, single_video(files={}))

    with pytest.raises(ArtifactNotFound, match="MP4 file not found"):
        orch.download(VIDEO_URL)
    assert orch.sweeper.wait(5)
    assert orch.locks.busy() == 0


def test_audio_without_artifact(settings: Settings) -> None:
    orch = make(settings, single_video(files={"webm": 10}))

    with pytest.raises(ArtifactNotFound, match="Audio download completed but file not found"):
        orch.download(VIDEO_URL, TargetKind.AUDIO)
    orch.sweeper.wait(5)


def test_artifact_that_settles_after_exit_is_found(settings: Settings) -> None:
    settings = dataclasses.replace(settings, sweep_delays=(0.2,), final_sweep_delay=2.0)

    def handler(inv: Invocation) -> ProcessResult:
        if "--dump-json" in inv.args:
            return ok(info_json("Late"))
        threading.Timer(0.1, write_outputs, args=(inv, {"mp4": 100})).start()
        return ok()

    orch = make(settings, handler)

    assert orch.download(VIDEO_URL)["filename"] == "Late.mp4"
    orch.sweeper.shutdown()


def test_info_too_large_message(settings: Settings) -> None:
    orch = make(settings, lambda inv: ProcessResult(ExitStatus.OUTPUT_TOO_LARGE, None, "", "", 1.0))

    with pytest.raises(OutputTooLarge, match="Video info too large"):
        orch.info(VIDEO_URL)


def test_malformed_info_is_not_cached(settings: Settings) -> None:
    orch = make(settings, lambda inv: ok("not json"))

    with pytest.raises(MalformedMetadata):
        orch.info(VIDEO_URL)
    with pytest.raises(MalformedMetadata):
        orch.info(VIDEO_URL)
    assert len(orch.runner.calls) == 2


def _playlist_handler(entries, downloads, title_stdout: Optional[str] = None):
    def handler(inv: Invocation) -> ProcessResult:
        if "--flat-playlist" in inv.args:
            return ok("\n".join(json.dumps(e) for e in entries))
        if "--get-filename" in inv.args:
            if title_stdout is None:
                return failed("ERROR: nope")
            return ok(title_stdout)
        write_into_folder(inv, downloads)
        return ok()

    return handler


def test_playlist_info(settings: Settings) -> None:
    entries = [{"id": "a", "title": "A", "playlist_title": "Road Trip"}, {"id": "b", "title": "B"}]
    orch = make(settings, _playlist_handler(entries, []))

    result = orch.info(PLAYLIST_URL)

    assert result == {"type": "playlist", "data": {"title": "Road Trip", "entries": entries}}
    assert orch.runner.modes() == ["--dump-json"]


def test_playlist_title_falls_back_to_a_second_invocation(settings: Settings) -> None:
    orch = make(settings, _playlist_handler([{"id": "a"}], [], title_stdout="Mixtape\nMixtape\n"))

    assert orch.info(PLAYLIST_URL)["data"]["title"] == "Mixtape"
    title_call = orch.runner.calls[1]
    assert title_call.args[0] == "--get-filename"
    assert title_call.timeout == settings.playlist_title_limits.timeout


def test_playlist_title_failure_uses_a_generic_title(settings: Settings) -> None:
    orch = make(settings, _playlist_handler([{"id": "a"}], []))

    assert orch.info(PLAYLIST_URL)["data"]["title"] == "YouTube Playlist"


def test_playlist_download(settings: Settings) -> None:
    entries = [{"id": "a", "playlist_title": "Road Trip"}, {"id": "b"}, {"id": "c"}]
    orch = make(settings, _playlist_handler(entries, ["A.mp4", "B.mp4", "C.f251.webm", "C.mp4.part"]))

    response = orch.download(PLAYLIST_URL, TargetKind.COLLECTION, "480p")

    folder = settings.downloads_dir / "Road_Trip"
    assert response == {
        "success": True,
        "message": "Playlist download completed! Downloaded 2 videos.",
        "folder": "Road_Trip",
        "totalVideos": 3,
        "downloadedVideos": 2,
        "folderPath": str(folder),
    }
    download = orch.runner.calls[-1]
    assert download.timeout == settings.playlist_limits.timeout
    assert "--newline" in download.args
    assert download.args[1] == orch.formats.selector("480p")

    assert orch.sweeper.wait(5)
    assert _names(folder) == {"A.mp4", "B.mp4"}


def test_playlist_timeout_message(settings: Settings) -> None:
    def handler(inv: Invocation) -> ProcessResult:
        if "--flat-playlist" in inv.args:
            return ok(json.dumps({"id": "a", "playlist_title": "Long"}))
        return ProcessResult(ExitStatus.TIMEOUT, -15, "", "", 1800.0)

    orch = make(settings, handler)

    with pytest.raises(ProcessTimeout, match="Playlist download timeout after 30 minutes"):
        orch.download(PLAYLIST_URL, "playlist")
    orch.sweeper.wait(5)


def test_list_formats(settings: Settings) -> None:
    listing = "137 mp4 1920x1080 25 | video only\n140 m4a audio only | audio only\n"
    orch = make(settings, lambda inv: ok(listing))

    result = orch.list_formats(VIDEO_URL)

    assert [f["formatId"] for f in result["availableFormats"]] == ["137", "140"]
    assert result["rawOutput"] == listing
    assert result["formats"][0]["quality"] == "highest"
    assert orch.runner.calls[0].args[0] == "-F"


def test_duplicate_downloads_queue_until_sweeps_finish(settings: Settings) -> None:
    settings = dataclasses.replace(settings, sweep_delays=(), final_sweep_delay=0.3)
    events = []
    guard = threading.Lock()

    def handler(inv: Invocation) -> ProcessResult:
        if "--dump-json" in inv.args:
            return ok(info_json("Dup"))
        with guard:
            events.append(("start", time.monotonic()))
        time.sleep(0.05)
        write_outputs(inv, {"mp4": 100})
        with guard:
            events.append(("end", time.monotonic()))
        return ok()

    orch = make(settings, handler)
    orch.info(VIDEO_URL)  # warm the cache so both threads go straight to the lock

    threads = [threading.Thread(target=orch.download, args=(VIDEO_URL,)) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    assert orch.sweeper.wait(5)

    kinds = [kind for kind, _ in events]
    assert kinds == ["start", "end", "start", "end"]
    first_end, second_start = events[1][1], events[2][1]
    assert second_start - first_end >= 0.25


def test_different_targets_run_concurrently(settings: Settings) -> None:
    barrier = threading.Barrier(2, timeout=5)
    titles = {VIDEO_URL: "One", "https://www.youtube.com/watch?v=aaaaaaaaaaa": "Two"}

    def handler(inv: Invocation) -> ProcessResult:
        url = inv.args[-1]
        if "--dump-json" in inv.args:
            return ok(info_json(titles[url]))
        barrier.wait()
        write_outputs(inv, {"mp4": 100})
        return ok()

    orch = make(settings, handler)
    results = []
    threads = [
        threading.Thread(target=lambda u=u: results.append(orch.download(u)["filename"]))
        for u in titles
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert sorted(results) == ["One.mp4", "Two.mp4"]
    orch.sweeper.wait(5)


def test_health_counters(settings: Settings) -> None:
    orch = make(settings, single_video())
    orch.info(VIDEO_URL)

    assert orch.health() == {
        "active_processes": 0,
        "active_downloads": 0,
        "cached_info": 1,
        "pending_sweeps": 0,
    }


def test_target_kind_parse() -> None:
    assert TargetKind.parse("audio") is TargetKind.AUDIO
    assert TargetKind.parse("PLAYLIST") is TargetKind.COLLECTION
    assert TargetKind.parse(None) is TargetKind.SINGLE
    assert TargetKind.parse("hologram") is TargetKind.SINGLE


def test_keyed_lock_releases_from_another_thread() -> None:
    locks = KeyedLock()
    locks.acquire("k")
    assert locks.busy() == 1

    releaser = threading.Thread(target=locks.release, args=("k",))
    releaser.start()
    releaser.join(5)

    locks.acquire("k")
    locks.release("k")
    assert locks.busy() == 0


def test_audio_after_video_keeps_both_files(settings: Settings) -> None:
    def handler(inv: Invocation) -> ProcessResult:
        if "--dump-json" in inv.args:
            return ok(info_json("Song"))
        if "--extract-audio" in inv.args:
            write_outputs(inv, {"webm": 700, "mp3": 300})
        else:
            write_outputs(inv, {"f140.m4a": 100, "mp4": 1000})
        return ok()

    orch = make(settings, handler)

    assert orch.download(VIDEO_URL, TargetKind.SINGLE)["filename"] == "Song.mp4"
    assert orch.download(VIDEO_URL, TargetKind.AUDIO)["filename"] == "Song.mp3"
    assert orch.sweeper.wait(5)
    assert _names(settings.downloads_dir) == {"Song.mp4", "Song.mp3"}


def _overlap_tracker(titles: Dict[str, str]):
    state = {"active": 0, "peak": 0}
    guard = threading.Lock()

    def handler(inv: Invocation) -> ProcessResult:
        url = inv.args[-1]
        if "--dump-json" in inv.args:
            return ok(info_json(titles[url]))
        with guard:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.1)
        write_outputs(inv, {"mp4": 100})
        with guard:
            state["active"] -= 1
        return ok()

    return handler, state


def _download_all(orch: Orchestrator, urls) -> list:
    results = []
    threads = [
        threading.Thread(target=lambda u=u: results.append(orch.download(u)["filename"]))
        for u in urls
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    assert orch.sweeper.wait(5)
    return results


def test_different_urls_writing_the_same_files_are_serialized(settings: Settings) -> None:
    titles = {
        "https://youtu.be/aaaaaaaaaaa": "Same Clip",
        "https://www.youtube.com/watch?v=aaaaaaaaaaa": "Same Clip",
    }
    handler, state = _overlap_tracker(titles)
    orch = make(settings, handler)

    results = _download_all(orch, titles)

    assert results == ["Same_Clip.mp4", "Same_Clip.mp4"]
    assert state["peak"] == 1
    assert orch.locks.busy() == 0


def test_untitled_targets_get_distinct_names(settings: Settings) -> None:
    titles = {
        "https://youtu.be/aaaaaaaaaaa": "日本語",
        "https://www.youtube.com/watch?v=bbbbbbbbbbb": "日本語",
    }
    handler, state = _overlap_tracker(titles)
    orch = make(settings, handler)

    results = _download_all(orch, titles)

    assert len(set(results)) == 2
    assert all(name.startswith("media_") and name.endswith(".mp4") for name in results)
    assert _names(settings.downloads_dir) == set(results)
