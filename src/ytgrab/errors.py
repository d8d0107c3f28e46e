"""
Failure kinds surfaced to API callers.

Every kind maps to one HTTP status; the Flask layer renders them as
``{"error": message}``.
"""

from __future__ import annotations

import re
from typing import Optional

# Redacts absolute-path-like strings before stderr reaches a caller.
_PATH_RE = re.compile(r"([A-Za-z]:\\|/)[^\s\"']+")


class FetchError(Exception):
    kind = "error"
    status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MissingInput(FetchError):
    kind = "missing_input"
    status = 400


class UnsupportedTarget(FetchError):
    """A collection identifier was sent to a single-item path (or similar)."""

    kind = "unsupported_target"
    status = 400


class OutputTooLarge(FetchError):
    kind = "output_too_large"
    status = 502


class ProcessTimeout(FetchError):
    kind = "timeout"
    status = 504


class ProcessFailed(FetchError):
    kind = "process_failed"
    status = 502

    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class MalformedMetadata(FetchError):
    kind = "malformed_metadata"
    status = 502


class ArtifactNotFound(FetchError):
    kind = "artifact_not_found"
    status = 500


def summarize_stderr(raw: str, max_lines: int = 2) -> str:
    """Last few non-blank stderr lines, joined, with paths redacted."""
    lines = [ln.strip() for ln in (raw or "").splitlines() if ln.strip()]
    excerpt = " | ".join(lines[-max_lines:]) if lines else "unknown error"
    return _PATH_RE.sub("<redacted>", excerpt)
