import logging
import subprocess
import sys
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import radar_animation.rendering as rendering_module  # noqa: E402
from radar_animation.compositor import FrameJob  # noqa: E402
from radar_animation.errors import RadarRenderError, RenderErrorKind  # noqa: E402
from radar_animation.models import TileLayer  # noqa: E402
from radar_animation.rendering import (  # noqa: E402
    FfmpegRenderer,
    build_frame_filter,
    build_overlay_filter,
    probe_ffmpeg,
)


def _job(tmp_path, layers, font_file=None):
    return FrameJob(
        canvas_width=248,
        canvas_height=198,
        background_color="0x121820",
        layers=tuple(layers),
        crop=(24, 24, 200, 150),
        label="10:05",
        generated_label="Generated: 10:07:00",
        font_file=font_file,
        output_path=tmp_path / "frame-000.png",
    )


def test_overlay_chain_stacks_layers_in_order(tmp_path):
    layers = [
        TileLayer(path=tmp_path / "map-000.png", x=-10, y=5),
        TileLayer(path=tmp_path / "radar-000-000.png", x=-10, y=5),
    ]

    graph = build_overlay_filter(layers)

    assert graph == (
        "[0:v][1:v]overlay=x=-10:y=5:format=auto[v1];"
        "[v1][2:v]overlay=x=-10:y=5:format=auto[vbase]"
    )
    assert build_overlay_filter([]) is None


def test_frame_filter_crops_marks_and_captions(tmp_path):
    layer = TileLayer(path=tmp_path / "map-000.png", x=0, y=0)

    graph = build_frame_filter(_job(tmp_path, [layer]))

    assert "[vbase]crop=200:150:24:24[vcrop]" in graph
    assert graph.count("drawbox=") == 3
    assert "text='10\\:05'" in graph
    assert "text='Generated\\: 10\\:07\\:00'" in graph
    assert "fontfile" not in graph
    assert graph.count(":expansion=none") == 2
    assert graph.endswith("[vout]")


def test_frame_filter_escapes_font_path(tmp_path):
    graph = build_frame_filter(_job(tmp_path, [], font_file="C:/fonts/a,b.ttf"))

    assert graph.startswith("[0:v]crop=")
    assert ":fontfile=C\\:/fonts/a\\,b.ttf" in graph


def test_probe_reports_missing_binary():
    assert probe_ffmpeg("/definitely-missing-ffmpeg") is False
    assert FfmpegRenderer("/definitely-missing-ffmpeg").is_available() is False


def test_probe_runs_once_per_binary():
    completed = subprocess.CompletedProcess(args=[], returncode=0)
    with patch.object(rendering_module, "_PROBE_RESULTS", {}):
        with patch.object(rendering_module.subprocess, "run", return_value=completed) as run:
            assert probe_ffmpeg("fake-ffmpeg") is True
            assert probe_ffmpeg("fake-ffmpeg") is True

    assert run.call_count == 1


def test_nonzero_exit_maps_to_render_failed(tmp_path):
    renderer = FfmpegRenderer("ffmpeg", logger=logging.getLogger("render-test"))
    failed = subprocess.CompletedProcess(args=[], returncode=1, stdout=b"", stderr=b"line one\nline two\nboom\n")

    with patch.object(rendering_module.subprocess, "run", return_value=failed):
        with pytest.raises(RadarRenderError) as excinfo:
            renderer.compose(_job(tmp_path, []))

    assert excinfo.value.kind is RenderErrorKind.TOOLCHAIN_FAILED
    assert excinfo.value.stderr_tail == "line one | line two | boom"


def test_missing_font_diagnostic_is_reported(tmp_path):
    renderer = FfmpegRenderer("ffmpeg")
    failed = subprocess.CompletedProcess(
        args=[],
        returncode=1,
        stdout=b"",
        stderr=b"[Parsed_drawtext_3] Cannot find a valid font for the family Sans\n",
    )

    with patch.object(rendering_module.subprocess, "run", return_value=failed):
        with pytest.raises(RadarRenderError) as excinfo:
            renderer.compose(_job(tmp_path, []))

    assert excinfo.value.kind is RenderErrorKind.FONT_UNAVAILABLE


def test_timeout_is_reported_as_render_failure(tmp_path):
    renderer = FfmpegRenderer("ffmpeg", timeout_seconds=5)

    with patch.object(
        rendering_module.subprocess,
        "run",
        side_effect=subprocess.TimeoutExpired(cmd="ffmpeg", timeout=5),
    ):
        with pytest.raises(RadarRenderError) as excinfo:
            renderer.compose(_job(tmp_path, []))

    assert excinfo.value.kind is RenderErrorKind.TOOLCHAIN_FAILED
    assert excinfo.value.detail == "ffmpeg_timeout"


def test_frame_filter_without_captions_ends_after_marker(tmp_path):
    graph = build_frame_filter(replace(_job(tmp_path, []), captions=False))

    assert "drawtext" not in graph
    assert graph.endswith("t=fill[vout]")
