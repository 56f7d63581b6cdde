"""Format normalization, classification and selection.

yt-dlp reports every encoding of a post as a loosely-typed dict. This module
turns those dicts into :class:`NormalizedFormat` values and picks the one a
client should play or download.

Codec policy: a codec field is PRESENT when it holds any value other than
the ``"none"`` sentinel, NONE when it holds the sentinel, and ABSENT when
yt-dlp left it out. NONE and ABSENT both mean "this track is not known to
exist", so a format needs at least one PRESENT codec to land in a bucket.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import NoMatchingFormat, ValidationError

NO_CODEC = "none"
BEST_QUALITY = "best"


class CodecPresence(Enum):
    PRESENT = "present"
    NONE = "none"
    ABSENT = "absent"


class FormatKind(Enum):
    COMBINED = "combined"
    VIDEO_ONLY = "video_only"
    AUDIO_ONLY = "audio_only"
    UNKNOWN = "unknown"


def codec_presence(codec: str | None) -> CodecPresence:
    if codec is None:
        return CodecPresence.ABSENT
    if codec == NO_CODEC:
        return CodecPresence.NONE
    return CodecPresence.PRESENT


class NormalizedFormat(BaseModel):
    model_config = ConfigDict(frozen=True)

    format_id: str | None = None
    quality: str = ""
    height: int | None = None
    ext: str = ""
    filesize: int | None = None
    url: str | None = None
    protocol: str | None = None
    http_headers: dict[str, str] = Field(default_factory=dict)
    acodec: str | None = None
    vcodec: str | None = None

    @property
    def has_video(self) -> bool:
        return codec_presence(self.vcodec) is CodecPresence.PRESENT

    @property
    def has_audio(self) -> bool:
        return codec_presence(self.acodec) is CodecPresence.PRESENT

    @property
    def rank_height(self) -> int:
        return self.height or 0


# -------------------------
# Normalizer
# -------------------------

def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float)):
        return int(value) or None
    try:
        return int(str(value)) or None
    except (ValueError, OverflowError):
        return None


def _as_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _as_headers(value: Any) -> dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    return {str(k): str(v) for k, v in value.items() if v is not None}


def normalize_format(raw: Any) -> NormalizedFormat:
    if not isinstance(raw, Mapping):
        raw = {}

    format_id = _as_str(raw.get("format_id")) or _as_str(raw.get("format"))
    height = _as_int(raw.get("height"))

    quality = _as_str(raw.get("format_note"))
    if not quality:
        quality = f"{height}p" if height else (format_id or "")

    return NormalizedFormat(
        format_id=format_id,
        quality=quality,
        height=height,
        ext=_as_str(raw.get("ext")) or "",
        filesize=_as_int(raw.get("filesize")) or _as_int(raw.get("filesize_approx")),
        url=_as_str(raw.get("url")),
        protocol=_as_str(raw.get("protocol")),
        http_headers=_as_headers(raw.get("http_headers")),
        acodec=_as_str(raw.get("acodec")),
        vcodec=_as_str(raw.get("vcodec")),
    )


def normalize_formats(raw_formats: Any) -> list[NormalizedFormat]:
    """Map yt-dlp format dicts 1:1 onto NormalizedFormat, keeping order.

    Anything that is not a list (missing key, null, a dict) yields ``[]``.
    """
    if not isinstance(raw_formats, list):
        return []
    return [normalize_format(f) for f in raw_formats]


# -------------------------
# Classifier
# -------------------------

def classify(fmt: NormalizedFormat) -> FormatKind:
    if fmt.has_video and fmt.has_audio:
        return FormatKind.COMBINED
    if fmt.has_video:
        return FormatKind.VIDEO_ONLY
    if fmt.has_audio:
        return FormatKind.AUDIO_ONLY
    return FormatKind.UNKNOWN


def sort_by_height_desc(formats: Sequence[NormalizedFormat]) -> list[NormalizedFormat]:
    # sorted() is stable, equal heights keep their input order
    return sorted(formats, key=lambda f: -f.rank_height)


class FormatBuckets(NamedTuple):
    combined: list[NormalizedFormat]
    video_only: list[NormalizedFormat]
    audio_only: list[NormalizedFormat]


def partition_formats(formats: Sequence[NormalizedFormat]) -> FormatBuckets:
    by_kind: dict[FormatKind, list[NormalizedFormat]] = {kind: [] for kind in FormatKind}
    for fmt in formats:
        by_kind[classify(fmt)].append(fmt)

    return FormatBuckets(
        combined=sort_by_height_desc(by_kind[FormatKind.COMBINED]),
        video_only=sort_by_height_desc(by_kind[FormatKind.VIDEO_ONLY]),
        audio_only=sort_by_height_desc(by_kind[FormatKind.AUDIO_ONLY]),
    )


# -------------------------
# Selection policies
# -------------------------

def select_best(formats: Sequence[NormalizedFormat]) -> NormalizedFormat | None:
    """Best-effort policy.

    Tallest combined format, then tallest video-only format, then whatever
    yt-dlp listed first. Audio-only formats are only chosen through that
    last fallback.
    """
    buckets = partition_formats(formats)
    if buckets.combined:
        return buckets.combined[0]
    if buckets.video_only:
        return buckets.video_only[0]
    return formats[0] if formats else None


def _tallest_within(
    formats: Sequence[NormalizedFormat], max_height: int
) -> NormalizedFormat | None:
    # Unknown height cannot be shown to satisfy the cap
    eligible = [f for f in formats if f.height is not None and f.height <= max_height]
    ranked = sort_by_height_desc(eligible)
    return ranked[0] if ranked else None


def select_capped(formats: Sequence[NormalizedFormat], max_height: int) -> NormalizedFormat:
    """Quality-capped policy: the tallest format not taller than ``max_height``.

    Combined formats win; otherwise any format with a video track is
    accepted even if it carries no audio.
    """
    chosen = _tallest_within([f for f in formats if classify(f) is FormatKind.COMBINED], max_height)
    if chosen is None:
        chosen = _tallest_within([f for f in formats if f.has_video], max_height)
    if chosen is None:
        raise NoMatchingFormat("Could not find a download URL for that quality")
    return chosen


def parse_quality(quality: str | None) -> int | None:
    """Turn the client's quality string into a height cap.

    ``None``, ``""`` and ``"best"`` mean no cap. ``"480"`` and ``"480p"``
    both mean 480.
    """
    if quality is None:
        return None
    value = str(quality).strip().lower()
    if value in ("", BEST_QUALITY):
        return None
    if value.endswith("p"):
        value = value[:-1]
    if not value.isascii() or not value.isdigit():
        raise ValidationError(f"Invalid quality: {quality!r}")
    return int(value)
