"""Web-Mercator tile pyramid geometry for the radar animation renderer."""

from __future__ import annotations

import math
from typing import List, Tuple

from radar_animation.models import Tile

TILE_SIZE = 256


def lat_lon_to_tile(lat: float, lon: float, z: int) -> Tuple[float, float]:
    """Project latitude/longitude to fractional tile coordinates at zoom ``z``."""
    n = 2 ** z
    x = (lon + 180.0) / 360.0 * n
    lat_rad = math.radians(lat)
    y = (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n
    return x, y


def normalize_tile_coords(z: int, x: int, y: int) -> Tuple[int, int]:
    """Wrap ``x`` around the world and clamp ``y`` into the pyramid."""
    n = 2 ** z
    return x % n, min(max(y, 0), n - 1)


def compute_visible_tiles(
    lat: float,
    lon: float,
    z: int,
    width: int,
    height: int,
    extra_tiles: int = 1,
    center_offset_px: Tuple[float, float] = (0.0, 0.0),
) -> List[Tile]:
    """Enumerate the tiles covering a ``width`` x ``height`` viewport centred on lat/lon.

    The viewport bounds are grown by ``extra_tiles`` whole tiles on every side.
    Tile coordinates are left unnormalized so the draw offsets stay consistent
    across the antimeridian; callers normalize right before fetching.
    """

    center_x, center_y = lat_lon_to_tile(lat, lon, z)
    cx = center_x * TILE_SIZE + center_offset_px[0]
    cy = center_y * TILE_SIZE + center_offset_px[1]
    extra = TILE_SIZE * max(0, min(8, int(extra_tiles)))

    origin_x = cx - width / 2
    origin_y = cy - height / 2
    start_x = math.floor((origin_x - extra) / TILE_SIZE)
    start_y = math.floor((origin_y - extra) / TILE_SIZE)
    end_x = math.ceil((cx + width / 2 + extra) / TILE_SIZE)
    end_y = math.ceil((cy + height / 2 + extra) / TILE_SIZE)

    tiles: List[Tile] = []
    for ty in range(start_y, end_y + 1):
        for tx in range(start_x, end_x + 1):
            tiles.append(
                Tile(
                    tx=tx,
                    ty=ty,
                    draw_x=int(round(tx * TILE_SIZE - origin_x)),
                    draw_y=int(round(ty * TILE_SIZE - origin_y)),
                )
            )
    return tiles


__all__ = [
    "TILE_SIZE",
    "compute_visible_tiles",
    "lat_lon_to_tile",
    "normalize_tile_coords",
]
