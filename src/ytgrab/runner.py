"""
Supervised execution of one external command.

``ProcessRunner.run`` launches the command, drains stdout/stderr on
reader threads with a per-stream byte cap, enforces a wall-clock deadline
and an optional cancel event, and always leaves no child behind.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Set, Tuple

from ytgrab.config import Limits
from ytgrab.errors import OutputTooLarge, ProcessFailed, ProcessTimeout, summarize_stderr

log = logging.getLogger(__name__)

_CHUNK = 64 * 1024
_POSIX = os.name == "posix"


class ExitStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    KILLED = "killed"
    OUTPUT_TOO_LARGE = "output_too_large"


@dataclass(frozen=True)
class Invocation:
    executable: str
    args: Tuple[str, ...] = ()
    cwd: Optional[Path] = None
    timeout: float = 30.0
    max_output_bytes: int = 10 * 1024 * 1024

    @classmethod
    def build(
        cls,
        command: Sequence[str],
        args: Sequence[str],
        limits: Limits,
        cwd: Optional[Path] = None,
    ) -> "Invocation":
        """``command`` is a prefix such as ("yt-dlp",) or (python, "-m", "yt_dlp")."""
        head, *rest = command
        return cls(
            executable=head,
            args=tuple(rest) + tuple(args),
            cwd=cwd,
            timeout=limits.timeout,
            max_output_bytes=limits.max_output_bytes,
        )

    @property
    def argv(self) -> List[str]:
        return [self.executable, *self.args]

    def __str__(self) -> str:
        return " ".join(shlex.quote(a) for a in self.argv)


@dataclass(frozen=True)
class ProcessResult:
    status: ExitStatus
    returncode: Optional[int]
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.status is ExitStatus.SUCCESS

    def raise_for_status(self) -> "ProcessResult":
        if self.status is ExitStatus.SUCCESS:
            return self
        if self.status is ExitStatus.TIMEOUT:
            raise ProcessTimeout(f"Process timed out after {self.duration:.0f} seconds")
        if self.status is ExitStatus.OUTPUT_TOO_LARGE:
            raise OutputTooLarge("Process output exceeded the configured limit")
        if self.status is ExitStatus.KILLED:
            raise ProcessFailed("Process was cancelled", self.stderr, self.returncode)
        raise ProcessFailed(
            f"Process exited with status {self.returncode}: {summarize_stderr(self.stderr)}",
            self.stderr,
            self.returncode,
        )


class _CappedReader(threading.Thread):
    """Drain one pipe; past ``limit`` bytes, flag overflow and discard the rest."""

    def __init__(self, stream, limit: int, overflow: threading.Event) -> None:
        super().__init__(daemon=True)
        self._stream = stream
        self._limit = limit
        self._overflow = overflow
        self._chunks: List[bytes] = []
        self.size = 0

    def run(self) -> None:
        try:
            while True:
                chunk = self._stream.read1(_CHUNK)
                if not chunk:
                    break
                self.size += len(chunk)
                if self.size > self._limit:
                    self._overflow.set()
                    continue
                self._chunks.append(chunk)
        except (OSError, ValueError):
            # pipe closed under us during termination
            pass
        finally:
            self._stream.close()

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def _signal_group(process: subprocess.Popen, force: bool) -> None:
    try:
        if _POSIX:
            os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
        elif force:
            process.kill()
        else:
            process.terminate()
    except (ProcessLookupError, PermissionError):
        pass
    except OSError as e:
        log.warning("Could not signal pid %s: %s", process.pid, e)


def _terminate_process(process: subprocess.Popen, grace: float) -> None:
    """SIGTERM the process group, then SIGKILL it if it outlives ``grace``."""
    _signal_group(process, force=False)
    try:
        process.wait(timeout=grace)
        return
    except subprocess.TimeoutExpired:
        pass
    _signal_group(process, force=True)
    process.wait()


class ProcessRunner:
    def __init__(self, poll_interval: float = 0.1, grace: float = 2.0) -> None:
        self.poll_interval = poll_interval
        self.grace = grace
        self._lock = threading.Lock()
        self._live: Set[subprocess.Popen] = set()

    @property
    def active(self) -> int:
        with self._lock:
            return len(self._live)

    def run(self, invocation: Invocation, cancel: Optional[threading.Event] = None) -> ProcessResult:
        log.info("Executing: %s", invocation)
        started = time.monotonic()

        try:
            process = subprocess.Popen(
                invocation.argv,
                cwd=str(invocation.cwd) if invocation.cwd else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except FileNotFoundError as e:
            raise ProcessFailed(f"Executable not found: {invocation.executable}") from e
        except OSError as e:
            raise ProcessFailed(f"Failed to start {invocation.executable}: {e}") from e

        overflow = threading.Event()
        readers = [
            _CappedReader(process.stdout, invocation.max_output_bytes, overflow),
            _CappedReader(process.stderr, invocation.max_output_bytes, overflow),
        ]
        for reader in readers:
            reader.start()

        with self._lock:
            self._live.add(process)

        status: Optional[ExitStatus] = None
        deadline = started + invocation.timeout
        try:
            while process.poll() is None:
                if overflow.is_set():
                    status = ExitStatus.OUTPUT_TOO_LARGE
                    break
                if time.monotonic() >= deadline:
                    status = ExitStatus.TIMEOUT
                    break
                if cancel is not None and cancel.is_set():
                    status = ExitStatus.KILLED
                    break
                overflow.wait(self.poll_interval)
        finally:
            # Any exit path, including exceptions in this thread, reaps the child.
            if process.poll() is None:
                _terminate_process(process, self.grace)
            for reader in readers:
                reader.join(self.grace)
            with self._lock:
                self._live.discard(process)

        duration = time.monotonic() - started
        if status is None:
            if overflow.is_set():
                status = ExitStatus.OUTPUT_TOO_LARGE
            elif process.returncode == 0:
                status = ExitStatus.SUCCESS
            else:
                status = ExitStatus.FAILED

        stdout, stderr = readers[0].text(), readers[1].text()
        if status is ExitStatus.SUCCESS:
            log.info("Finished in %.1fs: %s", duration, invocation.executable)
        else:
            log.warning(
                "%s after %.1fs (rc=%s): %s", status.value, duration, process.returncode,
                summarize_stderr(stderr, max_lines=5),
            )

        return ProcessResult(
            status=status,
            returncode=process.returncode,
            stdout=stdout,
            stderr=stderr,
            duration=duration,
        )

    def shutdown(self) -> None:
        """Kill every process still running (server exit)."""
        with self._lock:
            live = list(self._live)
        for process in live:
            if process.poll() is None:
                log.warning("Killing pid %s on shutdown", process.pid)
                _terminate_process(process, self.grace)
