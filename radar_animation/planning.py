"""Render plan construction for radar animations."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Sequence, Tuple

from radar_animation.config import Config, _parse_int
from radar_animation.errors import RadarRenderError, RenderErrorKind
from radar_animation.geometry import compute_visible_tiles
from radar_animation.labels import build_frame_labels, format_generated_label, resolve_timezone
from radar_animation.models import Frame, RadarState, RenderPlan

MAX_CANVAS_PX = 1920


def select_frames(frames: Sequence[Any], max_frames: int) -> Tuple[Frame, ...]:
    """Take the newest ``max_frames`` frames, keeping their positions in the full sequence."""
    subset = list(frames)[-max_frames:] if max_frames > 0 else []
    start_index = len(frames) - len(subset)
    selected = []
    for offset, frame in enumerate(subset):
        selected.append(
            Frame(
                time=int(float(getattr(frame, "time", 0) or 0)),
                path=str(getattr(frame, "path", "") or ""),
                index=start_index + offset,
            )
        )
    return tuple(selected)


def build_cache_key(
    width: int,
    height: int,
    z: int,
    lat: float,
    lon: float,
    frames: Sequence[Frame],
) -> str:
    """Derive the deterministic key shared by pixel-identical renders."""
    frame_times = ",".join(str(frame.time) for frame in frames)
    return f"{width}|{height}|{z}|{lat:.4f}|{lon:.4f}|{frame_times}"


def resolve_font_file(font_file: Optional[str]) -> Optional[str]:
    """Return the caption font path only when it exists on disk."""
    if not font_file:
        return None
    return font_file if Path(font_file).is_file() else None


def build_render_plan(
    config: Config,
    radar_state: RadarState,
    *,
    now: float,
    width: Any = None,
    height: Any = None,
) -> RenderPlan:
    """Compute everything one render attempt needs.

    Raises :class:`RadarRenderError` with ``radar_unavailable`` when the radar
    source currently has no frames.
    """

    gif = config.gif
    radar = config.radar

    frames = select_frames(radar_state.frames, gif.max_frames)
    if not frames:
        raise RadarRenderError(RenderErrorKind.NO_FRAMES_AVAILABLE)

    output_width = _parse_int(width, gif.width, 64, MAX_CANVAS_PX)
    output_height = _parse_int(height, gif.height, 64, MAX_CANVAS_PX)
    render_width = min(MAX_CANVAS_PX, output_width + gif.overscan_px * 2)
    render_height = min(MAX_CANVAS_PX, output_height + gif.overscan_px * 2)
    z = radar.effective_zoom
    zone = resolve_timezone(config.time_zone)

    tiles = compute_visible_tiles(
        radar.lat,
        radar.lon,
        z,
        render_width,
        render_height,
        gif.extra_tiles,
    )

    return RenderPlan(
        output_width=output_width,
        output_height=output_height,
        render_width=render_width,
        render_height=render_height,
        crop_x=(render_width - output_width) // 2,
        crop_y=(render_height - output_height) // 2,
        z=z,
        lat=radar.lat,
        lon=radar.lon,
        color=radar.color,
        options=radar.options,
        frame_delay_ms=gif.frame_delay_ms,
        frames=frames,
        frame_labels=tuple(
            build_frame_labels(
                frames,
                zone,
                now,
                gif.frame_timestamp_max_age_minutes * 60,
            )
        ),
        generated_label=format_generated_label(now, zone),
        font_file=resolve_font_file(gif.font_file),
        tiles=tuple(tiles),
        cache_key=build_cache_key(output_width, output_height, z, radar.lat, radar.lon, frames),
    )


__all__ = [
    "build_cache_key",
    "build_render_plan",
    "resolve_font_file",
    "select_frames",
]
