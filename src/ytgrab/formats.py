"""
Quality name -> yt-dlp format selector.

The numeric format-id pairs are YouTube catalog ids and go stale, so the
table is data: built-in defaults, optionally overridden by a JSON file
of the form::

    {"default": "720p",
     "selectors": {"1080p": "137+140/bestvideo[height<=1080]+bestaudio"},
     "aliases": {"fhd": "1080p"},
     "labels": {"1080p": "1080p (Full HD)"}}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional

log = logging.getLogger(__name__)

# Each chain tries explicit mp4 video ids with the m4a 140 audio stream,
# then a generic height-bounded pair.
DEFAULT_SELECTORS: Dict[str, str] = {
    "360p": "18",
    "480p": "135+140/244+140/397+140/bestvideo[height<=480]+bestaudio",
    "720p": "136+140/247+140/398+140/bestvideo[height<=720]+bestaudio",
    "1080p": "137+140/248+140/399+140/bestvideo[height<=1080]+bestaudio",
    "1440p": "271+140/400+140/bestvideo[height<=1440]+bestaudio",
    "4k": "313+140/401+140/bestvideo[height<=2160]+bestaudio",
    # same chain as 720p
    "highest": "136+140/247+140/398+140/bestvideo[height<=720]+bestaudio",
}

DEFAULT_ALIASES: Dict[str, str] = {
    "240p": "360p",
    "144p": "360p",
    "2160p": "4k",
    "best": "highest",
}

DEFAULT_LABELS: Dict[str, str] = {
    "highest": "Highest Quality",
    "4k": "4K (2160p)",
    "1440p": "1440p (2K)",
    "1080p": "1080p (Full HD)",
    "720p": "720p (HD)",
    "480p": "480p",
    "360p": "360p",
}

DEFAULT_TIER = "720p"
AUDIO_SELECTOR = "bestaudio"


class FormatTable:
    def __init__(
        self,
        selectors: Optional[Mapping[str, str]] = None,
        aliases: Optional[Mapping[str, str]] = None,
        labels: Optional[Mapping[str, str]] = None,
        default: str = DEFAULT_TIER,
    ) -> None:
        self.selectors = dict(DEFAULT_SELECTORS if selectors is None else selectors)
        self.aliases = dict(DEFAULT_ALIASES if aliases is None else aliases)
        self.labels = dict(DEFAULT_LABELS if labels is None else labels)
        if default not in self.selectors:
            raise ValueError(f"default tier {default!r} has no selector")
        self.default = default

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "FormatTable":
        """Defaults, with a JSON override file merged on top when given."""
        if path is None:
            return cls()

        path = Path(path)
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object")

        selectors = {**DEFAULT_SELECTORS, **data.get("selectors", {})}
        aliases = {**DEFAULT_ALIASES, **data.get("aliases", {})}
        labels = {**DEFAULT_LABELS, **data.get("labels", {})}
        log.info("Loaded %d quality tiers from %s", len(selectors), path)
        return cls(selectors, aliases, labels, data.get("default", DEFAULT_TIER))

    def tier(self, quality: Optional[str]) -> str:
        """Canonical tier name; unknown or empty input gives the default."""
        q = (quality or "").strip().lower()
        q = self.aliases.get(q, q)
        return q if q in self.selectors else self.default

    def selector(self, quality: Optional[str]) -> str:
        return self.selectors[self.tier(quality)]

    def menu(self) -> List[Dict[str, str]]:
        """Quality options shown to clients, highest first."""
        order = ["highest", "4k", "1440p", "1080p", "720p", "480p", "360p"]
        names = [n for n in order if n in self.selectors]
        names += sorted(n for n in self.selectors if n not in order)
        return [
            {
                "quality": n,
                "label": self.labels.get(n, n),
                "container": "mp4",
                "codecs": "video+audio (single file)" if "+" not in self.selectors[n]
                else "video+audio merged",
            }
            for n in names
        ]
