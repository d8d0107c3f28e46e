from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from ytgrab.config import Settings
from ytgrab.runner import ExitStatus, Invocation, ProcessResult


def ok(stdout: str = "", stderr: str = "") -> ProcessResult:
    return ProcessResult(ExitStatus.SUCCESS, 0, stdout, stderr, 0.01)


def failed(stderr: str, returncode: int = 1) -> ProcessResult:
    return ProcessResult(ExitStatus.FAILED, returncode, "", stderr, 0.01)


def info_json(title: str, **extra) -> str:
    return json.dumps({"title": title, "duration": 212, "uploader": "someone", **extra})


def output_template(invocation: Invocation) -> str:
    args = list(invocation.args)
    return args[args.index("-o") + 1]


def write_outputs(invocation: Invocation, files: Dict[str, int]) -> None:
    """``{"f140.m4a": 10, "mp4": 500}`` -> files from a ``<prefix>.%(ext)s`` template."""
    template = output_template(invocation)
    for ext, size in files.items():
        Path(template.replace("%(ext)s", ext)).write_bytes(b"x" * size)


def write_into_folder(invocation: Invocation, names: List[str]) -> None:
    """Files next to a ``%(title)s.%(ext)s`` playlist template."""
    folder = Path(output_template(invocation)).parent
    for name in names:
        (folder / name).write_bytes(b"x" * 100)


class FakeRunner:
    """Stands in for ProcessRunner; ``handler`` decides each result."""

    def __init__(self, handler: Callable[[Invocation], ProcessResult]) -> None:
        self.handler = handler
        self.calls: List[Invocation] = []
        self.active = 0
        self._lock = threading.Lock()

    def run(self, invocation: Invocation, cancel: Optional[threading.Event] = None) -> ProcessResult:
        with self._lock:
            self.calls.append(invocation)
        return self.handler(invocation)

    def modes(self) -> List[str]:
        return [inv.args[0] for inv in self.calls]

    def shutdown(self) -> None:
        pass


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    downloads = tmp_path / "downloads"
    downloads.mkdir()
    return Settings(
        downloads_dir=downloads,
        ytdlp_command=("yt-dlp",),
        sweep_delays=(0.0,),
        final_sweep_delay=0.05,
        playlist_sweep_delays=(0.0,),
    )
