"""
Locate files produced by a download in the shared output directory.

There is no manifest from yt-dlp; artifacts are recognized by the
sanitized title prefix the output template was built from.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional

from ytgrab.errors import ArtifactNotFound

_UNSAFE_RE = re.compile(r"[^\w\s.-]", re.ASCII)
_SPACE_RE = re.compile(r"\s+")

FALLBACK_NAME = "media"


def sanitize_filename(title: str, fallback: str = FALLBACK_NAME) -> str:
    """
    Reduce a title to ``[A-Za-z0-9_.-]``; spaces become underscores.

    Titles with nothing left (all non-ASCII, say) get ``fallback``, which
    callers make unique per target so unrelated downloads never share a name.
    """
    name = _SPACE_RE.sub("_", _UNSAFE_RE.sub("", title or ""))
    name = name.strip(".")
    return name or fallback


def belongs_to(name: str, prefix: Optional[str]) -> bool:
    """
    True when ``name`` is ``<prefix>.<anything>``.

    A ``None`` prefix means the whole directory belongs to the request
    (playlist folders).
    """
    if prefix is None:
        return True
    return name.startswith(prefix + ".")


def _size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return -1


def find_artifacts(directory: Path, prefix: Optional[str], extension: str) -> List[Path]:
    """Matching files, largest first. An empty list is not an error here."""
    directory = Path(directory)
    if not directory.is_dir():
        return []

    matches = [
        p for p in directory.iterdir()
        if p.is_file() and belongs_to(p.name, prefix) and p.name.endswith(extension)
    ]
    # size desc, then name for a stable order among equals
    matches.sort(key=lambda p: (-_size(p), p.name))
    return matches


def resolve(directory: Path, prefix: Optional[str], extension: str) -> List[Path]:
    """
    Like ``find_artifacts`` but raises ``ArtifactNotFound`` on no match.

    The first element is the accepted artifact (largest wins).
    """
    matches = find_artifacts(directory, prefix, extension)
    if not matches:
        raise ArtifactNotFound(f"No {extension} file for {prefix!r} in {Path(directory).name}")
    return matches
