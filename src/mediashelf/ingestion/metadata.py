"""Structural metadata extracted from media file names."""

from __future__ import annotations

import re
from typing import Dict, Optional

from pydantic import BaseModel

_EPISODE_PATTERNS = (
    re.compile(r"\b[Ss](\d{1,2})[ ._-]?[Ee](\d{1,3})\b"),
    re.compile(r"\b(\d{1,2})x(\d{2,3})\b"),
    re.compile(r"\bSeason[ ._-]*(\d{1,2}).*?Episode[ ._-]*(\d{1,3})\b", re.IGNORECASE),
)
_DATE_PATTERN = re.compile(r"\b(\d{4})[.\-_](\d{2})[.\-_](\d{2})\b")
_YEAR_PATTERN = re.compile(r"\b(19\d{2}|20\d{2})\b")
_QUALITY_PATTERN = re.compile(
    r"\b(2160p|4K|UHD|1080p|FHD|720p|480p|BluRay|BDRip|BRRip|WEBRip|WEB-DL|WEBDL|HDTV|PDTV|SDTV|DVDRip|DVD)\b",
    re.IGNORECASE,
)
_CODEC_PATTERN = re.compile(r"\b(x264|H\.?264|AVC|x265|H\.?265|HEVC|XviD|DivX|AV1)\b", re.IGNORECASE)
_NOISE_PATTERN = re.compile(
    r"\b(ITA|ENG|SUB|SUBS|MULTI|AAC|AC3|DTS|DDP?5\.?1|PROPER|REPACK|iNTERNAL|COMPLETE)\b", re.IGNORECASE
)
_SEPARATORS = re.compile(r"[._\-\[\]()]+")


class FilenameInfo(BaseModel):
    """Markers recognized in a file name.

    Attributes:
        title: Best guess at the series or film title.
        season: Season number when present.
        episode: Episode number when present.
        year: Release year when present.
        quality: Resolution or source marker.
        codec: Video codec marker.
    """

    title: str = ""
    season: Optional[int] = None
    episode: Optional[int] = None
    year: Optional[int] = None
    quality: Optional[str] = None
    codec: Optional[str] = None

    @property
    def is_episode(self) -> bool:
        """Return whether the name carries a season/episode marker."""
        return self.season is not None and self.episode is not None

    def as_metadata(self) -> Dict[str, str]:
        """Return non-empty markers as string metadata."""
        data: Dict[str, str] = {}
        if self.title:
            data["title"] = self.title
        if self.season is not None:
            data["season"] = f"{self.season:02d}"
        if self.episode is not None:
            data["episode"] = f"{self.episode:02d}"
        if self.year is not None:
            data["year"] = str(self.year)
        if self.quality:
            data["quality"] = self.quality
        if self.codec:
            data["codec"] = self.codec
        return data


def analyze_filename(name: str) -> FilenameInfo:
    """Split ``name`` into a title and the structural markers it carries."""
    stem = name.rsplit(".", 1)[0] if "." in name else name
    info = FilenameInfo()
    cut = len(stem)

    for pattern in _EPISODE_PATTERNS:
        match = pattern.search(stem)
        if match:
            info.season = int(match.group(1))
            info.episode = int(match.group(2))
            cut = min(cut, match.start())
            break

    date = _DATE_PATTERN.search(stem)
    if date:
        info.year = int(date.group(1))
        cut = min(cut, date.start())
    else:
        year = _YEAR_PATTERN.search(stem)
        if year and year.start() > 0:
            info.year = int(year.group(1))
            cut = min(cut, year.start())

    quality = _QUALITY_PATTERN.search(stem)
    if quality:
        info.quality = quality.group(1)
        cut = min(cut, quality.start())
    codec = _CODEC_PATTERN.search(stem)
    if codec:
        info.codec = codec.group(1)
        cut = min(cut, codec.start())

    title = _NOISE_PATTERN.sub(" ", stem[:cut])
    title = _SEPARATORS.sub(" ", title)
    info.title = " ".join(title.split())
    return info


__all__ = ["FilenameInfo", "analyze_filename"]
