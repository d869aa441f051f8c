"""Error taxonomy for radar animation rendering."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from radar_animation.models import Tile


class RenderErrorKind(str, Enum):
    """Closed set of render failure kinds; the value is the wire code."""

    TOOLCHAIN_UNAVAILABLE = "gif_renderer_unavailable"
    NO_FRAMES_AVAILABLE = "radar_unavailable"
    MAP_TILES_UNAVAILABLE = "map_tiles_unavailable"
    RADAR_TILES_INCOMPLETE = "radar_tiles_incomplete"
    INVALID_TILE_FORMAT = "invalid_tile_format"
    FONT_UNAVAILABLE = "ffmpeg_font_unavailable"
    TOOLCHAIN_FAILED = "ffmpeg_render_failed"
    CACHE_UNREADABLE = "cache_unreadable"


INCOMPLETE_KINDS = frozenset(
    {
        RenderErrorKind.MAP_TILES_UNAVAILABLE,
        RenderErrorKind.RADAR_TILES_INCOMPLETE,
        RenderErrorKind.INVALID_TILE_FORMAT,
    }
)


class RadarRenderError(RuntimeError):
    """Raised when a radar animation cannot be produced."""

    def __init__(
        self,
        kind: RenderErrorKind,
        *,
        detail: Optional[str] = None,
        tile: Optional[Tile] = None,
        frame_index: Optional[int] = None,
        stderr_tail: Optional[str] = None,
    ) -> None:
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail
        self.tile = tile
        self.frame_index = frame_index
        self.stderr_tail = stderr_tail

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def is_incomplete(self) -> bool:
        return self.kind in INCOMPLETE_KINDS

    def summary(self) -> str:
        parts = [self.code]
        if self.detail:
            parts.append(f"detail={self.detail}")
        if self.frame_index is not None:
            parts.append(f"frame={self.frame_index}")
        if self.tile is not None:
            parts.append(f"tile={self.tile.tx},{self.tile.ty}")
        if self.stderr_tail:
            parts.append(f"stderr={self.stderr_tail}")
        return " ".join(parts)


class TileFetchError(RuntimeError):
    """Raised when a tile source cannot deliver a tile."""


__all__ = [
    "INCOMPLETE_KINDS",
    "RadarRenderError",
    "RenderErrorKind",
    "TileFetchError",
]
