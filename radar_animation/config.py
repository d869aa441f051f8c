"""Configuration dataclasses and loading helpers for the radar animation service."""

from __future__ import annotations

import json
import math
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

DEFAULT_MAP_TEMPLATE = "https://tile.openstreetmap.org/{z}/{x}/{y}.png"
DEFAULT_FALLBACK_TEMPLATES = (
    "https://a.basemaps.cartocdn.com/dark_all/{z}/{x}/{y}.png",
    "https://b.basemaps.cartocdn.com/dark_all/{z}/{x}/{y}.png",
)
DEFAULT_FONT_FILE = "/usr/share/fonts/TTF/DejaVuSans.ttf"
WEEK_SECONDS = 7 * 24 * 60 * 60


def _parse_int(value: Any, default: int, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Parse an integer, falling back to ``default`` and clamping to the given bounds."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    parsed = int(math.floor(number))
    if minimum is not None and parsed < minimum:
        return minimum
    if maximum is not None and parsed > maximum:
        return maximum
    return parsed


def _parse_float(value: Any, default: float) -> float:
    """Parse a finite floating point number with fallback to default."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if math.isfinite(parsed) else default


def _parse_str(value: Any, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def _parse_templates(value: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return default
    return tuple(str(item).strip() for item in value if item and str(item).strip())


@dataclass(frozen=True)
class RadarSettings:
    """Where the radar is centred and how its frames are fetched."""

    api_url: str = "https://api.rainviewer.com/public/weather-maps.json"
    lat: float = -27.47
    lon: float = 153.02
    zoom: int = 6
    provider_max_zoom: int = 6
    color: int = 3
    options: str = "1_1"
    refresh_seconds: int = 120
    startup_retry_seconds: int = 5
    startup_retry_max_attempts: int = 12

    @property
    def effective_zoom(self) -> int:
        return min(self.zoom, self.provider_max_zoom)


@dataclass(frozen=True)
class GifSettings:
    """Rendering and caching knobs for the animated GIF."""

    width: int = 800
    height: int = 480
    extra_tiles: int = 1
    max_frames: int = 8
    frame_delay_ms: int = 500
    overscan_px: int = 24
    max_age_seconds: int = 360
    frame_timestamp_max_age_minutes: int = 180
    ffmpeg_binary: str = "ffmpeg"
    ffmpeg_timeout_seconds: int = 60
    font_file: str = DEFAULT_FONT_FILE
    cache_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "radar-animation-gifs")
    disk_retention_seconds: int = WEEK_SECONDS
    sweep_interval_seconds: int = 60 * 60
    render_interval_seconds: int = 120
    tile_fetch_workers: int = 4


@dataclass(frozen=True)
class MapSettings:
    """Basemap tile source settings."""

    tile_url_template: str = DEFAULT_MAP_TEMPLATE
    fallback_tile_url_templates: Tuple[str, ...] = DEFAULT_FALLBACK_TEMPLATES
    user_agent: str = "radar-animation/1.0"
    http_timeout_seconds: int = 10


@dataclass(frozen=True)
class Config:
    """Root configuration object for the radar animation service."""

    time_zone: str = ""
    radar: RadarSettings = field(default_factory=RadarSettings)
    gif: GifSettings = field(default_factory=GifSettings)
    map: MapSettings = field(default_factory=MapSettings)
    log_file: Optional[Path] = Path("logs") / "radar_animation.log"
    log_level: str = "INFO"


def _parse_radar_settings(raw: Mapping[str, Any], env: Mapping[str, str]) -> RadarSettings:
    default = RadarSettings()
    if not isinstance(raw, Mapping):
        raw = {}
    lat = _parse_float(raw.get("lat"), default.lat)
    lon = _parse_float(raw.get("lon"), default.lon)
    if env.get("RADAR_LAT"):
        lat = _parse_float(env.get("RADAR_LAT"), lat)
    if env.get("RADAR_LON"):
        lon = _parse_float(env.get("RADAR_LON"), lon)
    return RadarSettings(
        api_url=_parse_str(raw.get("api_url"), default.api_url),
        lat=lat,
        lon=lon,
        zoom=_parse_int(raw.get("zoom"), default.zoom, 1, 12),
        provider_max_zoom=_parse_int(raw.get("provider_max_zoom"), default.provider_max_zoom, 1, 12),
        color=_parse_int(raw.get("color"), default.color, 0, 10),
        options=_parse_str(raw.get("options"), default.options),
        refresh_seconds=_parse_int(raw.get("refresh_seconds"), default.refresh_seconds, 30, 3600),
        startup_retry_seconds=_parse_int(raw.get("startup_retry_seconds"), default.startup_retry_seconds, 2),
        startup_retry_max_attempts=_parse_int(
            raw.get("startup_retry_max_attempts"),
            default.startup_retry_max_attempts,
            0,
        ),
    )


def _parse_gif_settings(raw: Mapping[str, Any], refresh_seconds: int, env: Mapping[str, str]) -> GifSettings:
    default = GifSettings()
    if not isinstance(raw, Mapping):
        raw = {}
    cache_dir = raw.get("cache_dir") or env.get("RADAR_GIF_CACHE_DIR")
    return GifSettings(
        width=_parse_int(raw.get("width"), default.width, 64, 1920),
        height=_parse_int(raw.get("height"), default.height, 64, 1920),
        extra_tiles=_parse_int(raw.get("extra_tiles"), default.extra_tiles, 0, 6),
        max_frames=_parse_int(raw.get("max_frames"), default.max_frames, 1, 30),
        frame_delay_ms=_parse_int(raw.get("frame_delay_ms"), default.frame_delay_ms, 50, 5000),
        overscan_px=_parse_int(raw.get("overscan_px"), default.overscan_px, 0, 512),
        max_age_seconds=_parse_int(
            raw.get("max_age_seconds"),
            max(180, refresh_seconds * 3),
            60,
            86400,
        ),
        frame_timestamp_max_age_minutes=_parse_int(
            raw.get("frame_timestamp_max_age_minutes"),
            default.frame_timestamp_max_age_minutes,
            0,
            24 * 60,
        ),
        ffmpeg_binary=_parse_str(raw.get("ffmpeg_binary") or env.get("FFMPEG_PATH"), default.ffmpeg_binary),
        ffmpeg_timeout_seconds=_parse_int(
            raw.get("ffmpeg_timeout_seconds"),
            default.ffmpeg_timeout_seconds,
            5,
            600,
        ),
        font_file=_parse_str(raw.get("font_file"), default.font_file),
        cache_dir=Path(cache_dir) if cache_dir else default.cache_dir,
        disk_retention_seconds=_parse_int(
            raw.get("disk_retention_seconds"),
            default.disk_retention_seconds,
            60,
        ),
        sweep_interval_seconds=_parse_int(
            raw.get("sweep_interval_seconds"),
            default.sweep_interval_seconds,
            0,
        ),
        render_interval_seconds=_parse_int(
            raw.get("render_interval_seconds"),
            default.render_interval_seconds,
            5,
            600,
        ),
        tile_fetch_workers=_parse_int(raw.get("tile_fetch_workers"), default.tile_fetch_workers, 1, 16),
    )


def _parse_map_settings(raw: Mapping[str, Any]) -> MapSettings:
    default = MapSettings()
    if not isinstance(raw, Mapping):
        raw = {}
    return MapSettings(
        tile_url_template=_parse_str(raw.get("tile_url_template"), default.tile_url_template),
        fallback_tile_url_templates=_parse_templates(
            raw.get("fallback_tile_url_templates"),
            default.fallback_tile_url_templates,
        ),
        user_agent=_parse_str(raw.get("user_agent"), default.user_agent),
        http_timeout_seconds=_parse_int(raw.get("http_timeout_seconds"), default.http_timeout_seconds, 1, 120),
    )


def parse_config(data: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> Config:
    """Build a :class:`Config` from already-decoded JSON data."""
    source_env = os.environ if env is None else env
    radar = _parse_radar_settings(data.get("radar", {}), source_env)
    gif = _parse_gif_settings(data.get("gif", {}), radar.refresh_seconds, source_env)
    log_file = data.get("log_file", Config.log_file)
    return Config(
        time_zone=_parse_str(data.get("time_zone") or source_env.get("TZ"), ""),
        radar=radar,
        gif=gif,
        map=_parse_map_settings(data.get("map", {})),
        log_file=Path(log_file) if log_file else None,
        log_level=_parse_str(source_env.get("LOG_LEVEL") or data.get("log_level"), "INFO").upper(),
    )


def load_config(config_path: Path | str, env: Mapping[str, str] | None = None) -> Config:
    """Load configuration from a JSON file, or environment defaults when it is absent."""
    path = Path(config_path)

    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, Mapping):
            data = {}
        return parse_config(data, env)

    return parse_config({}, env)


__all__ = [
    "Config",
    "GifSettings",
    "MapSettings",
    "RadarSettings",
    "load_config",
    "parse_config",
]
