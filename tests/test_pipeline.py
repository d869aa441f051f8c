import logging
import sys
import threading
from pathlib import Path

import cv2
import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from radar_animation.compositor import FrameCompositor, validate_tile_payload  # noqa: E402
from radar_animation.config import parse_config  # noqa: E402
from radar_animation.errors import RadarRenderError, RenderErrorKind  # noqa: E402
from radar_animation.models import Frame, RadarState, TilePayload  # noqa: E402
from radar_animation.planning import build_render_plan  # noqa: E402
from radar_animation.rendering import Renderer, RenderPipeline  # noqa: E402


def _png(color=(40, 80, 120)):
    tile = np.full((256, 256, 3), color, dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", tile)
    assert ok
    return encoded.tobytes()


class FakeRenderer(Renderer):
    name = "fake"

    def __init__(self):
        self.composed = []
        self.encoded = []

    def is_available(self):
        return True

    def compose(self, job):
        self.composed.append(job)
        job.output_path.write_bytes(b"frame")

    def encode(self, job):
        self.encoded.append(job)
        return b"GIF89a" + bytes(len(job.frame_paths))


def _plan(frame_count=3):
    config = parse_config({"gif": {"overscan_px": 0}}, {})
    state = RadarState(frames=tuple(Frame(time=1000 * (i + 1), path=f"/p/{i}", index=i) for i in range(frame_count)))
    return build_render_plan(config, state, now=4000, width=200, height=150)


def _pipeline(tmp_path, fetch_map_tile, fetch_radar_tile, renderer=None):
    renderer = renderer or FakeRenderer()
    logger = logging.getLogger("pipeline-test")
    compositor = FrameCompositor(renderer, fetch_map_tile, fetch_radar_tile, logger=logger, fetch_workers=2)
    work_root = tmp_path / "work"
    work_root.mkdir()
    return RenderPipeline(compositor, renderer, logger=logger, temp_root=work_root), renderer, work_root


def test_pipeline_composes_every_frame_in_order(tmp_path):
    png = _png()
    radar_calls = []
    lock = threading.Lock()

    def fetch_map_tile(z, x, y):
        return TilePayload("image/png", png)

    def fetch_radar_tile(**kwargs):
        with lock:
            radar_calls.append(kwargs)
        return TilePayload("image/png", png)

    pipeline, renderer, work_root = _pipeline(tmp_path, fetch_map_tile, fetch_radar_tile)
    plan = _plan()

    body = pipeline.run(plan)

    assert body.startswith(b"GIF89a")
    assert [job.output_path.name for job in renderer.composed] == ["frame-000.png", "frame-001.png", "frame-002.png"]
    assert [job.label for job in renderer.composed] == list(plan.frame_labels)
    first = renderer.composed[0]
    assert len(first.layers) == 2 * len(plan.tiles)
    assert first.crop == (0, 0, 200, 150)
    assert {call["frame_index"] for call in radar_calls} == {0, 1, 2}
    assert {call["frame_path"] for call in radar_calls} == {"/p/0", "/p/1", "/p/2"}
    assert renderer.encoded[0].fps == pytest.approx(2.0)
    assert list(work_root.iterdir()) == []


def test_missing_radar_tile_fails_the_whole_render(tmp_path):
    png = _png()

    def fetch_map_tile(z, x, y):
        return TilePayload("image/png", png)

    def fetch_radar_tile(frame_index, **kwargs):
        if frame_index == 1:
            raise RuntimeError("HTTP 503")
        return TilePayload("image/png", png)

    pipeline, renderer, work_root = _pipeline(tmp_path, fetch_map_tile, fetch_radar_tile)

    with pytest.raises(RadarRenderError) as excinfo:
        pipeline.run(_plan())

    assert excinfo.value.kind is RenderErrorKind.RADAR_TILES_INCOMPLETE
    assert excinfo.value.frame_index == 1
    assert excinfo.value.tile is not None
    assert excinfo.value.is_incomplete
    assert renderer.encoded == []
    assert list(work_root.iterdir()) == []


def test_html_error_page_is_rejected_as_map_tile(tmp_path):
    def fetch_map_tile(z, x, y):
        return TilePayload("text/html", b"<html>rate limited</html>")

    def fetch_radar_tile(**kwargs):
        raise AssertionError("radar tiles should not be fetched")

    pipeline, renderer, work_root = _pipeline(tmp_path, fetch_map_tile, fetch_radar_tile)

    with pytest.raises(RadarRenderError) as excinfo:
        pipeline.run(_plan())

    assert excinfo.value.kind is RenderErrorKind.MAP_TILES_UNAVAILABLE
    assert excinfo.value.detail == "map_tile_invalid_png"
    assert renderer.composed == []


def test_validate_tile_payload_checks_signature_and_decode():
    png = _png()

    assert validate_tile_payload(TilePayload("image/png", png), "x") == png
    assert validate_tile_payload(TilePayload("application/octet-stream", png), "x") == png

    with pytest.raises(RadarRenderError) as excinfo:
        validate_tile_payload(TilePayload("image/png", b"<html></html>"), "radar_tile_invalid_png")
    assert excinfo.value.kind is RenderErrorKind.INVALID_TILE_FORMAT

    with pytest.raises(RadarRenderError):
        validate_tile_payload(TilePayload("image/png", png[:40]), "truncated")

    with pytest.raises(RadarRenderError):
        validate_tile_payload({"body": png}, "wrong_type")


def test_invalid_encoder_output_is_rejected(tmp_path):
    png = _png()

    class BrokenEncoder(FakeRenderer):
        def encode(self, job):
            return b"not a gif"

    pipeline, _, work_root = _pipeline(
        tmp_path,
        lambda z, x, y: TilePayload("image/png", png),
        lambda **kwargs: TilePayload("image/png", png),
        renderer=BrokenEncoder(),
    )

    with pytest.raises(RadarRenderError) as excinfo:
        pipeline.run(_plan(1))

    assert excinfo.value.kind is RenderErrorKind.TOOLCHAIN_FAILED
    assert list(work_root.iterdir()) == []


def test_missing_font_degrades_to_uncaptioned_frames(tmp_path):
    png = _png()

    class NoFontRenderer(FakeRenderer):
        def compose(self, job):
            if job.captions:
                raise RadarRenderError(RenderErrorKind.FONT_UNAVAILABLE, detail="exit status 1")
            super().compose(job)

    pipeline, renderer, _ = _pipeline(
        tmp_path,
        lambda z, x, y: TilePayload("image/png", png),
        lambda **kwargs: TilePayload("image/png", png),
        renderer=NoFontRenderer(),
    )

    body = pipeline.run(_plan(2))

    assert body.startswith(b"GIF89a")
    assert [job.captions for job in renderer.composed] == [False, False]


def test_caption_fallback_does_not_outlive_one_render(tmp_path):
    png = _png()
    attempts = []

    class FlakyFontRenderer(FakeRenderer):
        def compose(self, job):
            attempts.append(job.captions)
            if job.captions and len(attempts) == 1:
                raise RadarRenderError(RenderErrorKind.FONT_UNAVAILABLE, detail="exit status 1")
            super().compose(job)

    pipeline, renderer, _ = _pipeline(
        tmp_path,
        lambda z, x, y: TilePayload("image/png", png),
        lambda **kwargs: TilePayload("image/png", png),
        renderer=FlakyFontRenderer(),
    )

    pipeline.run(_plan(2))
    pipeline.run(_plan(2))

    assert attempts == [True, False, False, True, True]
    assert [job.captions for job in renderer.composed] == [False, False, True, True]


def test_tiles_across_the_antimeridian_are_wrapped_before_fetching(tmp_path):
    png = _png()
    fetched = []
    lock = threading.Lock()

    def fetch_map_tile(z, x, y):
        with lock:
            fetched.append((z, x, y))
        return TilePayload("image/png", png)

    def fetch_radar_tile(z, x, y, **kwargs):
        with lock:
            fetched.append((z, x, y))
        return TilePayload("image/png", png)

    config = parse_config(
        {"radar": {"lat": 0, "lon": 179.9, "zoom": 3, "provider_max_zoom": 3}, "gif": {"overscan_px": 0}},
        {},
    )
    state = RadarState(frames=(Frame(time=1000, path="/p/0", index=0),))
    plan = build_render_plan(config, state, now=4000, width=200, height=150)
    pipeline, renderer, _ = _pipeline(tmp_path, fetch_map_tile, fetch_radar_tile)

    pipeline.run(plan)

    n = 2 ** plan.z
    assert plan.z == 3
    assert any(tile.tx >= n for tile in plan.tiles)
    assert len(fetched) == 2 * len(plan.tiles)
    assert all(z == 3 and 0 <= x < n and 0 <= y < n for z, x, y in fetched)

    rows = {}
    for tile in plan.tiles:
        rows.setdefault(tile.ty, []).append(tile)
    for row in rows.values():
        offsets = [tile.draw_x for tile in sorted(row, key=lambda tile: tile.tx)]
        assert all(b - a == 256 for a, b in zip(offsets, offsets[1:]))
    layer_offsets = {(layer.x, layer.y) for layer in renderer.composed[0].layers}
    assert layer_offsets == {(tile.draw_x, tile.draw_y) for tile in plan.tiles}
