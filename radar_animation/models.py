"""Data models used across the radar animation renderer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

GIF_CONTENT_TYPE = "image/gif"


@dataclass(frozen=True)
class Frame:
    """One radar snapshot: epoch seconds, opaque tile path and sequence position."""

    time: int
    path: str
    index: int


@dataclass(frozen=True)
class Tile:
    """Unnormalized pyramid coordinate plus its pixel offset on the render canvas."""

    tx: int
    ty: int
    draw_x: int
    draw_y: int


@dataclass(frozen=True)
class TilePayload:
    """Raw tile response returned by a tile source."""

    content_type: str
    body: bytes


@dataclass(frozen=True)
class TileLayer:
    """A validated tile image written to the render working directory."""

    path: Path
    x: int
    y: int


@dataclass(frozen=True)
class RadarState:
    """Read-only snapshot of the radar frame source."""

    frames: Tuple[Frame, ...] = ()
    host: str = "https://tilecache.rainviewer.com"
    updated_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def available(self) -> bool:
        return len(self.frames) > 0


@dataclass(frozen=True)
class RenderPlan:
    """Everything a single render attempt needs, computed once up front."""

    output_width: int
    output_height: int
    render_width: int
    render_height: int
    crop_x: int
    crop_y: int
    z: int
    lat: float
    lon: float
    color: int
    options: str
    frame_delay_ms: int
    frames: Tuple[Frame, ...]
    frame_labels: Tuple[str, ...]
    generated_label: str
    font_file: Optional[str]
    tiles: Tuple[Tile, ...]
    cache_key: str

    @property
    def fps(self) -> float:
        return max(0.2, 1000.0 / max(50, self.frame_delay_ms))


@dataclass(frozen=True)
class CacheMeta:
    """Sidecar metadata describing the latest-slot GIF."""

    width: int
    height: int
    rendered_at: datetime
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "width": self.width,
            "height": self.height,
            "renderedAt": self.rendered_at.isoformat(),
        }
        if self.size is not None:
            data["bytes"] = self.size
        return data


@dataclass(frozen=True)
class GifResult:
    """Animation bytes handed back to callers."""

    body: bytes = field(repr=False)
    content_type: str = GIF_CONTENT_TYPE
    is_fallback: bool = False


__all__ = [
    "CacheMeta",
    "Frame",
    "GIF_CONTENT_TYPE",
    "GifResult",
    "RadarState",
    "RenderPlan",
    "Tile",
    "TileLayer",
    "TilePayload",
]
