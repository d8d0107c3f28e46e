"""
Best-effort removal of partial and intermediate yt-dlp outputs.

yt-dlp leaves ``.part``/``.ytdl`` files, per-format streams such as
``Title.f140.m4a`` and sometimes several candidate finals while its
merge step settles. A sweep pass removes the leftovers that belong to one
request; the final pass also keeps only the largest final file.

Passes run as a ``SweepJob`` on a tracked thread owned by ``Sweeper``, so
pending cleanup is visible, awaitable and flushed on shutdown.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Set, Tuple

from ytgrab.artifacts import belongs_to, find_artifacts

log = logging.getLogger(__name__)

PARTIAL_MARKERS = (".part", ".temp", ".ytdl")
INTERMEDIATE_EXTS = (".webm", ".m4a", ".opus")
# Finished outputs of any request kind; a pass for one kind never touches another's.
FINAL_EXTS = (".mp4", ".mp3")

# "Title.f140.m4a" -> per-format stream kept before merge
_FORMAT_ID_RE = re.compile(r"\.f\d+(?=\.)")


def _tail(name: str, prefix: Optional[str]) -> str:
    return name[len(prefix):] if prefix else name


def is_transient(name: str, prefix: Optional[str], final_ext: str) -> bool:
    """Whether ``name`` (already known to belong to ``prefix``) is a leftover."""
    tail = _tail(name, prefix)
    if any(marker in tail for marker in PARTIAL_MARKERS):
        return True
    if _FORMAT_ID_RE.search(tail):
        return True
    if tail.endswith(final_ext):
        return False
    if final_ext in tail:
        return True
    return any(ext in tail for ext in INTERMEDIATE_EXTS)


def _remove(path: Path, reason: str) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        log.debug("Already gone: %s", path.name)
        return False
    except OSError as e:
        log.warning("Could not remove %s: %s", path.name, e)
        return False
    log.info("%s: %s", reason, path.name)
    return True


def _owned_files(directory: Path, prefix: Optional[str]) -> List[Path]:
    try:
        return [p for p in directory.iterdir() if p.is_file() and belongs_to(p.name, prefix)]
    except OSError as e:
        log.warning("Cannot list %s: %s", directory, e)
        return []


def sweep_pass(directory: Path, prefix: Optional[str], final_ext: str) -> List[Path]:
    """Delete transient files for ``prefix``. Returns what was actually removed."""
    removed = []
    for path in _owned_files(Path(directory), prefix):
        if is_transient(path.name, prefix, final_ext) and _remove(path, "Cleaned up temp file"):
            removed.append(path)
    return removed


def final_pass(directory: Path, prefix: str, final_ext: str) -> List[Path]:
    """
    Transient sweep, then largest-wins among final candidates, then drop
    every other non-final file sharing the prefix. Finished files of the
    other kinds (``Title.mp4`` during an audio request) are kept.
    """
    if prefix is None:
        raise ValueError("final pass needs a name prefix")

    directory = Path(directory)
    removed = sweep_pass(directory, prefix, final_ext)

    finals = find_artifacts(directory, prefix, final_ext)
    for path in finals[1:]:
        if _remove(path, f"Removed smaller {final_ext} file"):
            removed.append(path)

    for path in _owned_files(directory, prefix):
        if path.name.endswith(FINAL_EXTS + (final_ext,)):
            continue
        if _remove(path, "Final cleanup removed"):
            removed.append(path)
    return removed


@dataclass(frozen=True)
class SweepPlan:
    directory: Path
    prefix: Optional[str]
    final_ext: str
    delays: Tuple[float, ...] = ()
    final_delay: Optional[float] = None


class SweepJob(threading.Thread):
    def __init__(self, plan: SweepPlan, on_done: Optional[Callable[["SweepJob"], None]] = None) -> None:
        super().__init__(daemon=True, name=f"sweep-{plan.prefix or plan.directory.name}")
        self.plan = plan
        self.removed: List[Path] = []
        self.done = threading.Event()
        self._flush = threading.Event()
        self._callbacks = [on_done] if on_done else []

    def add_done_callback(self, fn: Callable[["SweepJob"], None]) -> None:
        self._callbacks.append(fn)

    def flush(self) -> None:
        """Run the remaining passes now instead of waiting for their delays."""
        self._flush.set()

    def _sleep_until(self, when: float) -> None:
        remaining = when - time.monotonic()
        if remaining > 0:
            self._flush.wait(remaining)

    def run(self) -> None:
        plan = self.plan
        started = time.monotonic()
        try:
            for offset in plan.delays:
                self._sleep_until(started + offset)
                self.removed += sweep_pass(plan.directory, plan.prefix, plan.final_ext)
            if plan.final_delay is not None:
                self._sleep_until(started + plan.final_delay)
                self.removed += final_pass(plan.directory, plan.prefix, plan.final_ext)
        except Exception:
            # cleanup never reaches the caller
            log.exception("Sweep failed for %s in %s", plan.prefix, plan.directory)
        finally:
            self.done.set()
            for fn in self._callbacks:
                try:
                    fn(self)
                except Exception:
                    log.exception("Sweep callback failed")


class Sweeper:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Set[SweepJob] = set()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._jobs)

    def schedule(self, plan: SweepPlan, on_done: Optional[Callable[[SweepJob], None]] = None) -> SweepJob:
        job = SweepJob(plan)
        job.add_done_callback(self._forget)
        if on_done is not None:
            job.add_done_callback(on_done)
        with self._lock:
            self._jobs.add(job)
        job.start()
        return job

    def _forget(self, job: SweepJob) -> None:
        with self._lock:
            self._jobs.discard(job)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every scheduled job finished. False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            jobs = list(self._jobs)
        for job in jobs:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            job.join(remaining)
            if job.is_alive():
                return False
        return True

    def shutdown(self, timeout: Optional[float] = 30.0) -> None:
        with self._lock:
            jobs = list(self._jobs)
        for job in jobs:
            job.flush()
        self.wait(timeout)
