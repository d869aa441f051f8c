"""HTTP tile sources: the RainViewer radar feed and OSM-style basemap tiles."""

from __future__ import annotations

import logging
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple

import requests

from radar_animation.config import MapSettings, RadarSettings
from radar_animation.errors import TileFetchError
from radar_animation.models import Frame, RadarState, TilePayload

DEFAULT_RADAR_HOST = "https://tilecache.rainviewer.com"
RADAR_TILE_SIZE = 256
PLACEHOLDER_MAX_BYTES = 200
MAP_TILE_TTL_SECONDS = 600
RADAR_TILE_TTL_SECONDS = 120

_OSM_PRIMARY_RE = re.compile(r"://tile\.openstreetmap\.org/", re.IGNORECASE)
_CARTO_DARK_RE = re.compile(r"basemaps\.cartocdn\.com/dark_all", re.IGNORECASE)


def _http_get(url: str, *, timeout: float, headers: Optional[Mapping[str, str]] = None) -> TilePayload:
    try:
        response = requests.get(url, timeout=timeout, headers=dict(headers or {}))
        response.raise_for_status()
    except requests.RequestException as exc:
        raise TileFetchError(f"GET {url} failed: {exc}") from exc
    return TilePayload(
        content_type=response.headers.get("Content-Type") or "application/octet-stream",
        body=response.content,
    )


# ----------------------------------------------------------------------
# Basemap tiles
# ----------------------------------------------------------------------


def build_candidate_templates(primary: str, fallbacks: Sequence[str] = ()) -> List[str]:
    """Order the URL templates to try for one map tile, without duplicates.

    An OpenStreetMap primary is followed by its ``a``/``b``/``c`` mirrors, and
    the CARTO dark fallbacks are dropped so the basemap style stays consistent.
    """

    primary = str(primary or "").strip()
    seen = set()
    ordered: List[str] = []

    def add(template: str) -> None:
        template = str(template or "").strip()
        if template and template not in seen:
            seen.add(template)
            ordered.append(template)

    osm_primary = bool(_OSM_PRIMARY_RE.search(primary))
    add(primary)
    if osm_primary:
        for mirror in ("a", "b", "c"):
            add(primary.replace("://tile.openstreetmap.org/", f"://{mirror}.tile.openstreetmap.org/"))

    for template in fallbacks or ():
        if osm_primary and _CARTO_DARK_RE.search(str(template)):
            continue
        add(template)
    return ordered


def is_blocked_placeholder(payload: TilePayload) -> bool:
    """Tiny PNG answers are the "access blocked" images some tile servers send."""
    return (
        "image/png" in (payload.content_type or "").lower()
        and 0 < len(payload.body) <= PLACEHOLDER_MAX_BYTES
    )


def build_tile_url(template: str, z: int, x: int, y: int) -> str:
    return template.replace("{z}", str(z)).replace("{x}", str(x)).replace("{y}", str(y))


class MapTileClient:
    """Fetch basemap tiles, walking the mirror and fallback templates in order."""

    def __init__(self, settings: MapSettings, logger: Optional[logging.Logger] = None) -> None:
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.templates = build_candidate_templates(
            settings.tile_url_template,
            settings.fallback_tile_url_templates,
        )
        self.headers = {
            "User-Agent": settings.user_agent,
            "Accept": "image/png,image/*;q=0.9,*/*;q=0.5",
        }

    def fetch_tile(self, z: int, x: int, y: int) -> TilePayload:
        last_error: Optional[Exception] = None
        for position, template in enumerate(self.templates):
            url = build_tile_url(template, z, x, y)
            try:
                payload = _http_get(url, timeout=self.settings.http_timeout_seconds, headers=self.headers)
            except TileFetchError as exc:
                self.logger.debug("Map tile %s/%s/%s failed via %s: %s", z, x, y, template, exc)
                last_error = exc
                continue
            if is_blocked_placeholder(payload) and position < len(self.templates) - 1:
                self.logger.debug("Map tile %s/%s/%s looks blocked at %s; trying next source", z, x, y, url)
                continue
            return payload
        if last_error is not None:
            raise last_error
        raise TileFetchError("map_tile_unavailable")


# ----------------------------------------------------------------------
# Radar tiles
# ----------------------------------------------------------------------


def parse_rainviewer_meta(payload: Any) -> Tuple[str, Tuple[Frame, ...]]:
    """Extract the tile host and the time-ordered past + nowcast frames."""
    if not isinstance(payload, Mapping):
        return DEFAULT_RADAR_HOST, ()
    host = str(payload.get("host") or DEFAULT_RADAR_HOST)
    radar = payload.get("radar")
    radar = radar if isinstance(radar, Mapping) else {}

    entries = []
    for group in ("past", "nowcast"):
        items = radar.get(group)
        if not isinstance(items, list):
            continue
        for item in items:
            if not isinstance(item, Mapping) or not isinstance(item.get("path"), str):
                continue
            try:
                frame_time = int(float(item.get("time")))
            except (TypeError, ValueError):
                continue
            entries.append((frame_time, item["path"]))

    entries.sort(key=lambda entry: entry[0])
    frames = tuple(Frame(time=frame_time, path=path, index=index) for index, (frame_time, path) in enumerate(entries))
    return host, frames


def build_rainviewer_tile_url(
    host: str,
    frame_path: str,
    *,
    z: int,
    x: int,
    y: int,
    color: int = 3,
    options: str = "1_1",
    size: int = RADAR_TILE_SIZE,
) -> str:
    return f"{str(host).rstrip('/')}{frame_path}/{size}/{z}/{x}/{y}/{color}/{options or '1_1'}.png"


class RainViewerClient:
    """Poll the RainViewer metadata endpoint and serve its radar tiles."""

    def __init__(
        self,
        settings: RadarSettings,
        logger: Optional[logging.Logger] = None,
        *,
        http_timeout: float = 10,
    ) -> None:
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.http_timeout = http_timeout
        self._state = RadarState()
        self._lock = threading.Lock()

    def refresh(self) -> RadarState:
        """Fetch fresh metadata; failures keep the previous frames and record the error."""
        try:
            response = requests.get(self.settings.api_url, timeout=self.http_timeout)
            response.raise_for_status()
            host, frames = parse_rainviewer_meta(response.json())
        except (requests.RequestException, ValueError) as exc:
            self.logger.warning("Radar metadata refresh failed: %s", exc)
            with self._lock:
                self._state = RadarState(
                    frames=self._state.frames,
                    host=self._state.host,
                    updated_at=self._state.updated_at,
                    error=str(exc) or "rainviewer_fetch_failed",
                )
                return self._state

        with self._lock:
            self._state = RadarState(
                frames=frames,
                host=host,
                updated_at=datetime.now(timezone.utc).isoformat(),
                error=None,
            )
            state = self._state
        self.logger.debug("Radar metadata refreshed: %s frames from %s", len(frames), host)
        return state

    def get_state(self) -> RadarState:
        with self._lock:
            return self._state

    def fetch_tile(
        self,
        frame_index: int,
        z: int,
        x: int,
        y: int,
        color: int = 3,
        options: str = "1_1",
        *,
        frame_path: Optional[str] = None,
    ) -> TilePayload:
        state = self.get_state()
        if frame_path is None:
            if not isinstance(frame_index, int) or not 0 <= frame_index < len(state.frames):
                raise TileFetchError("frame index out of range")
            frame_path = state.frames[frame_index].path
        url = build_rainviewer_tile_url(state.host, frame_path, z=z, x=x, y=y, color=color, options=options)
        return _http_get(url, timeout=self.http_timeout)


# ----------------------------------------------------------------------
# Short-lived tile memo
# ----------------------------------------------------------------------


class TileMemo:
    """Time-bounded memo of tile payloads keyed by tile coordinates."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 4096,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: Dict[Hashable, Tuple[float, TilePayload]] = {}
        self._lock = threading.Lock()

    def get_or_fetch(self, key: Hashable, fetch: Callable[[], TilePayload]) -> TilePayload:
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and (now - entry[0]) < self.ttl_seconds:
                return entry[1]

        value = fetch()
        with self._lock:
            self._entries[key] = (self.clock(), value)
            if len(self._entries) > self.max_entries:
                self._prune(now)
        return value

    def _prune(self, now: float) -> None:
        expired = [key for key, (stored_at, _) in self._entries.items() if (now - stored_at) >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            oldest = min(self._entries, key=lambda key: self._entries[key][0])
            del self._entries[oldest]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def build_tile_fetchers(
    map_client: MapTileClient,
    radar_client: RainViewerClient,
    *,
    clock: Callable[[], float] = time.time,
) -> Tuple[Callable[..., TilePayload], Callable[..., TilePayload]]:
    """Wrap both clients in memos and expose the keyword fetchers the compositor calls."""

    map_memo = TileMemo(MAP_TILE_TTL_SECONDS, clock=clock)
    radar_memo = TileMemo(RADAR_TILE_TTL_SECONDS, clock=clock)

    def fetch_map_tile(*, z: int, x: int, y: int) -> TilePayload:
        return map_memo.get_or_fetch((z, x, y), lambda: map_client.fetch_tile(z, x, y))

    def fetch_radar_tile(
        *,
        frame_index: int,
        z: int,
        x: int,
        y: int,
        color: int,
        options: str,
        frame_path: Optional[str] = None,
    ) -> TilePayload:
        key = (frame_path or frame_index, z, x, y, color, options)
        return radar_memo.get_or_fetch(
            key,
            lambda: radar_client.fetch_tile(frame_index, z, x, y, color, options, frame_path=frame_path),
        )

    return fetch_map_tile, fetch_radar_tile


__all__ = [
    "MapTileClient",
    "RainViewerClient",
    "TileMemo",
    "build_candidate_templates",
    "build_rainviewer_tile_url",
    "build_tile_fetchers",
    "build_tile_url",
    "is_blocked_placeholder",
    "parse_rainviewer_meta",
]
