"""Per-frame tile assembly for the radar animation pipeline."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from radar_animation.errors import RadarRenderError, RenderErrorKind
from radar_animation.geometry import normalize_tile_coords
from radar_animation.models import RenderPlan, Tile, TileLayer, TilePayload

if TYPE_CHECKING:
    from radar_animation.rendering import Renderer

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
BACKGROUND_COLOR = "0x121820"

MapTileFetcher = Callable[..., TilePayload]
RadarTileFetcher = Callable[..., TilePayload]


@dataclass(frozen=True)
class FrameJob:
    """Renderer-neutral description of one still frame."""

    canvas_width: int
    canvas_height: int
    background_color: str
    layers: Tuple[TileLayer, ...]
    crop: Tuple[int, int, int, int]
    label: str
    generated_label: str
    font_file: Optional[str]
    output_path: Path
    captions: bool = True


def is_png_bytes(body: object) -> bool:
    return isinstance(body, (bytes, bytearray)) and bytes(body[:8]) == PNG_SIGNATURE


def validate_tile_payload(payload: object, detail: str) -> bytes:
    """Return the PNG body of ``payload`` or raise ``invalid_tile_format``.

    Upstream tile servers occasionally answer 200 with an HTML error page or a
    truncated body, so the content type, the PNG signature and a full decode are
    all checked.
    """

    if not isinstance(payload, TilePayload):
        raise RadarRenderError(RenderErrorKind.INVALID_TILE_FORMAT, detail=detail)
    content_type = (payload.content_type or "").lower()
    if content_type and not content_type.startswith("image/") and content_type != "application/octet-stream":
        raise RadarRenderError(RenderErrorKind.INVALID_TILE_FORMAT, detail=detail)
    if not is_png_bytes(payload.body):
        raise RadarRenderError(RenderErrorKind.INVALID_TILE_FORMAT, detail=detail)
    decoded = cv2.imdecode(np.frombuffer(payload.body, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if decoded is None or decoded.size == 0:
        raise RadarRenderError(RenderErrorKind.INVALID_TILE_FORMAT, detail=detail)
    return bytes(payload.body)


class FrameCompositor:
    """Fetch, validate and stage tile imagery, then hand each frame to the renderer."""

    def __init__(
        self,
        renderer: "Renderer",
        fetch_map_tile: MapTileFetcher,
        fetch_radar_tile: RadarTileFetcher,
        *,
        logger: Optional[logging.Logger] = None,
        fetch_workers: int = 4,
        background_color: str = BACKGROUND_COLOR,
    ) -> None:
        self.renderer = renderer
        self.fetch_map_tile = fetch_map_tile
        self.fetch_radar_tile = fetch_radar_tile
        self.logger = logger or logging.getLogger(__name__)
        self.fetch_workers = max(1, fetch_workers)
        self.background_color = background_color

    # ------------------------------------------------------------------
    # Tile staging
    # ------------------------------------------------------------------

    def fetch_map_layers(self, plan: RenderPlan, work_dir: Path) -> List[TileLayer]:
        """Stage every basemap tile once; they are shared by all frames."""

        def fetch(tile: Tile, index: int) -> TileLayer:
            x, y = normalize_tile_coords(plan.z, tile.tx, tile.ty)
            payload = self.fetch_map_tile(z=plan.z, x=x, y=y)
            body = validate_tile_payload(payload, "map_tile_invalid_png")
            path = work_dir / f"map-{index:03d}.png"
            path.write_bytes(body)
            return TileLayer(path=path, x=tile.draw_x, y=tile.draw_y)

        return self._fetch_all(plan.tiles, fetch, RenderErrorKind.MAP_TILES_UNAVAILABLE, None)

    def fetch_radar_layers(self, plan: RenderPlan, position: int, work_dir: Path) -> List[TileLayer]:
        """Stage the radar tiles of the frame at ``position`` within the plan."""
        frame = plan.frames[position]

        def fetch(tile: Tile, index: int) -> TileLayer:
            x, y = normalize_tile_coords(plan.z, tile.tx, tile.ty)
            payload = self.fetch_radar_tile(
                frame_index=frame.index,
                frame_path=frame.path,
                z=plan.z,
                x=x,
                y=y,
                color=plan.color,
                options=plan.options,
            )
            body = validate_tile_payload(payload, "radar_tile_invalid_png")
            path = work_dir / f"radar-{position:03d}-{index:03d}.png"
            path.write_bytes(body)
            return TileLayer(path=path, x=tile.draw_x, y=tile.draw_y)

        return self._fetch_all(plan.tiles, fetch, RenderErrorKind.RADAR_TILES_INCOMPLETE, frame.index)

    def _fetch_all(
        self,
        tiles: Sequence[Tile],
        fetch: Callable[[Tile, int], TileLayer],
        failure_kind: RenderErrorKind,
        frame_index: Optional[int],
    ) -> List[TileLayer]:
        layers: List[TileLayer] = []
        with ThreadPoolExecutor(max_workers=self.fetch_workers) as executor:
            futures = [executor.submit(fetch, tile, index) for index, tile in enumerate(tiles)]
            for tile, future in zip(tiles, futures):
                try:
                    layers.append(future.result())
                except Exception as exc:
                    for pending in futures:
                        pending.cancel()
                    detail = exc.detail if isinstance(exc, RadarRenderError) else None
                    self.logger.warning(
                        "Tile %s,%s failed (%s%s): %s",
                        tile.tx,
                        tile.ty,
                        failure_kind.value,
                        f", frame {frame_index}" if frame_index is not None else "",
                        exc,
                    )
                    raise RadarRenderError(
                        failure_kind,
                        detail=detail,
                        tile=tile,
                        frame_index=frame_index,
                    ) from exc

        if len(layers) != len(tiles):
            raise RadarRenderError(failure_kind, frame_index=frame_index)
        return layers

    # ------------------------------------------------------------------
    # Frame composition
    # ------------------------------------------------------------------

    def build_frame_job(
        self,
        plan: RenderPlan,
        position: int,
        map_layers: Sequence[TileLayer],
        radar_layers: Sequence[TileLayer],
        work_dir: Path,
    ) -> FrameJob:
        label = plan.frame_labels[position] if position < len(plan.frame_labels) else ""
        return FrameJob(
            canvas_width=plan.render_width,
            canvas_height=plan.render_height,
            background_color=self.background_color,
            # Radar is always drawn above the basemap.
            layers=tuple(map_layers) + tuple(radar_layers),
            crop=(plan.crop_x, plan.crop_y, plan.output_width, plan.output_height),
            label=label,
            generated_label=plan.generated_label,
            font_file=plan.font_file,
            output_path=work_dir / f"frame-{position:03d}.png",
        )

    def compose_frame(
        self,
        plan: RenderPlan,
        position: int,
        map_layers: Sequence[TileLayer],
        radar_layers: Sequence[TileLayer],
        work_dir: Path,
        *,
        captions: bool = True,
    ) -> FrameJob:
        """Compose one frame and return the job that produced it.

        When the caption font is unavailable the frame is composed again
        without captions; the returned job's ``captions`` reports which ran.
        """

        job = self.build_frame_job(plan, position, map_layers, radar_layers, work_dir)
        if not captions:
            job = replace(job, captions=False)
        try:
            self.renderer.compose(job)
        except RadarRenderError as exc:
            if exc.kind is not RenderErrorKind.FONT_UNAVAILABLE or not job.captions:
                raise
            self.logger.warning("Caption font unavailable; rendering frames without captions (%s)", exc.summary())
            job = replace(job, captions=False)
            self.renderer.compose(job)
        if not job.output_path.exists():
            raise RadarRenderError(
                RenderErrorKind.TOOLCHAIN_FAILED,
                detail="frame_not_written",
                frame_index=plan.frames[position].index,
            )
        return job


__all__ = [
    "BACKGROUND_COLOR",
    "FrameCompositor",
    "FrameJob",
    "PNG_SIGNATURE",
    "is_png_bytes",
    "validate_tile_payload",
]
