"""Caption text for radar animation frames."""

from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from radar_animation.models import Frame

logger = logging.getLogger(__name__)

_DRAWTEXT_ESCAPES = (
    ("\\", "\\\\"),
    (":", "\\:"),
    ("'", "\\'"),
    (",", "\\,"),
    ("[", "\\["),
    ("]", "\\]"),
    (";", "\\;"),
)


def escape_drawtext(text: Optional[str]) -> str:
    """Escape the ffmpeg filter-graph metacharacters in ``text``.

    Captions are drawn with ``expansion=none``, so ``%`` needs no escaping.
    """
    escaped = str(text or "")
    for needle, replacement in _DRAWTEXT_ESCAPES:
        escaped = escaped.replace(needle, replacement)
    return escaped


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """Return the named zone, or ``None`` for host local time."""
    zone_name = (name or "").strip()
    if not zone_name:
        return None
    try:
        return ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone '%s'; using host local time", zone_name)
        return None


def normalize_epoch_seconds(raw_time: object) -> float:
    """Accept epoch seconds or milliseconds and return seconds (0 when invalid)."""
    try:
        value = float(raw_time)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if value != value or value <= 0:
        return 0.0
    return value / 1000.0 if value > 1e12 else value


def _localize(epoch_seconds: float, zone: Optional[tzinfo]) -> datetime:
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.astimezone(zone) if zone is not None else moment.astimezone()


def format_frame_timestamp(raw_time: object, zone: Optional[tzinfo]) -> str:
    seconds = normalize_epoch_seconds(raw_time)
    if seconds <= 0:
        return ""
    return _localize(seconds, zone).strftime("%H:%M")


def build_frame_labels(
    frames: Sequence[Frame],
    zone: Optional[tzinfo],
    now: float,
    stale_after_seconds: float,
) -> List[str]:
    """Build one HH:MM label per frame.

    When the newest frame is older than ``stale_after_seconds`` every label is
    shifted forward by the gap between ``now`` and that frame, so a frozen
    upstream stream still reads as current. A threshold of ``0`` disables the
    shift.
    """

    frame_times = [normalize_epoch_seconds(frame.time) for frame in frames]
    latest = max(frame_times, default=0.0)
    if latest <= 0:
        return ["" for _ in frames]

    shift = 0.0
    if stale_after_seconds > 0 and (now - latest) > stale_after_seconds:
        shift = now - latest
        logger.debug("Radar frames are %.0fs old; shifting labels forward", shift)

    return [
        format_frame_timestamp(seconds + shift if seconds > 0 else 0, zone)
        for seconds in frame_times
    ]


def format_generated_label(now: float, zone: Optional[tzinfo]) -> str:
    return "Generated: " + _localize(now, zone).strftime("%H:%M:%S")


__all__ = [
    "build_frame_labels",
    "escape_drawtext",
    "format_frame_timestamp",
    "format_generated_label",
    "normalize_epoch_seconds",
    "resolve_timezone",
]
