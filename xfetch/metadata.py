from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .errors import NoMatchingFormat
from .formats import (
    NormalizedFormat,
    normalize_formats,
    partition_formats,
    select_best,
    select_capped,
)

DEFAULT_TITLE = "Twitter/X Video"

MAX_COMBINED = 8
MAX_VIDEO_ONLY = 8
MAX_AUDIO_ONLY = 4


# -------------------------
# Response models
# -------------------------

class DirectPlayable(BaseModel):
    url: str | None = None
    protocol: str | None = None
    http_headers: dict[str, str] = Field(default_factory=dict)


class RawIdentity(BaseModel):
    extractor: str | None = None
    webpage_url: str | None = None


class RankedResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    title: str = DEFAULT_TITLE
    thumbnail: str | None = None
    duration: int | float | None = None
    uploader: str | None = None
    formats: list[NormalizedFormat] = Field(default_factory=list)
    has_audio_separate: bool = Field(False, alias="hasAudioSeparate")
    direct_playable: DirectPlayable | None = Field(None, alias="directPlayable")
    raw: RawIdentity = Field(default_factory=RawIdentity)


class DownloadTarget(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    download_url: str = Field(alias="downloadUrl")
    protocol: str | None = None
    http_headers: dict[str, str] = Field(default_factory=dict)


# -------------------------
# Helpers
# -------------------------

def _first(info: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = info.get(key)
        if value:
            return value
    return None


def _text(info: Mapping[str, Any], *keys: str) -> str | None:
    value = _first(info, *keys)
    return None if value is None else str(value)


def _duration(info: Mapping[str, Any]) -> int | float | None:
    value = info.get("duration")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value or None


def _take(
    bucket: Sequence[NormalizedFormat], limit: int, seen_urls: set[str]
) -> list[NormalizedFormat]:
    # yt-dlp sometimes lists the same stream under two ids
    picked = []
    for fmt in bucket:
        if len(picked) == limit:
            break
        if fmt.url is not None:
            if fmt.url in seen_urls:
                continue
            seen_urls.add(fmt.url)
        picked.append(fmt)
    return picked


def to_direct_playable(fmt: NormalizedFormat | None) -> DirectPlayable | None:
    if fmt is None:
        return None
    return DirectPlayable(url=fmt.url, protocol=fmt.protocol, http_headers=dict(fmt.http_headers))


# -------------------------
# Assemblers
# -------------------------

def rank_formats(formats: Sequence[NormalizedFormat]) -> tuple[list[NormalizedFormat], bool]:
    """Return the client-facing format list and whether audio is listed separately."""
    buckets = partition_formats(formats)
    seen_urls: set[str] = set()
    ranked = (
        _take(buckets.combined, MAX_COMBINED, seen_urls)
        + _take(buckets.video_only, MAX_VIDEO_ONLY, seen_urls)
        + _take(buckets.audio_only, MAX_AUDIO_ONLY, seen_urls)
    )
    return ranked, bool(buckets.audio_only)


def build_ranked_response(info: Mapping[str, Any]) -> RankedResponse:
    formats = normalize_formats(info.get("formats"))
    ranked, has_audio_separate = rank_formats(formats)

    return RankedResponse(
        id=_text(info, "id", "display_id"),
        title=_text(info, "title") or DEFAULT_TITLE,
        thumbnail=_text(info, "thumbnail"),
        duration=_duration(info),
        uploader=_text(info, "uploader", "channel"),
        formats=ranked,
        has_audio_separate=has_audio_separate,
        direct_playable=to_direct_playable(select_best(formats)),
        raw=RawIdentity(
            extractor=_text(info, "extractor"),
            webpage_url=_text(info, "webpage_url", "original_url"),
        ),
    )


def build_download_target(info: Mapping[str, Any], max_height: int | None = None) -> DownloadTarget:
    """Pick the format to hand to the client for download.

    ``max_height`` of ``None`` uses the best-effort policy, anything else
    the quality-capped one.
    """
    formats = normalize_formats(info.get("formats"))
    if not formats:
        raise NoMatchingFormat("No downloadable formats found for this post")

    if max_height is None:
        chosen = select_best(formats)
    else:
        chosen = select_capped(formats, max_height)

    if chosen is None or not chosen.url:
        raise NoMatchingFormat("Could not find a download URL for that quality")

    return DownloadTarget(
        download_url=chosen.url,
        protocol=chosen.protocol,
        http_headers=dict(chosen.http_headers),
    )
