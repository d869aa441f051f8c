"""External renderer and the per-attempt render pipeline."""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Dict, List, Optional, Sequence

from radar_animation.compositor import FrameCompositor, FrameJob
from radar_animation.errors import RadarRenderError, RenderErrorKind
from radar_animation.labels import escape_drawtext
from radar_animation.models import RenderPlan, TileLayer

GIF_SIGNATURES = (b"GIF87a", b"GIF89a")
FRAME_PATTERN = "frame-%03d.png"
FONT_ERROR_MARKERS = ("cannot find a valid font", "no such filter: 'drawtext'")

# Probe results live for the whole process; a binary installed later needs a restart.
_PROBE_RESULTS: Dict[str, bool] = {}
_PROBE_LOCK = threading.Lock()


def probe_ffmpeg(binary: str, *, timeout: float = 10.0) -> bool:
    """Check once per process whether ``binary -version`` runs successfully."""
    with _PROBE_LOCK:
        cached = _PROBE_RESULTS.get(binary)
        if cached is not None:
            return cached
        try:
            completed = subprocess.run(
                [binary, "-version"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=timeout,
                check=False,
            )
            available = completed.returncode == 0
        except (OSError, subprocess.SubprocessError):
            available = False
        _PROBE_RESULTS[binary] = available
        return available


def _stderr_tail(stderr: Optional[bytes], lines: int = 3) -> Optional[str]:
    if not stderr:
        return None
    text = stderr.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    return " | ".join(text.splitlines()[-lines:])


@dataclass(frozen=True)
class EncodeJob:
    """Ordered still frames to be encoded into a looping GIF."""

    frame_paths: Sequence[Path]
    fps: float
    output_path: Path


class Renderer(ABC):
    """Capability that turns staged tiles into stills and stills into a GIF."""

    name = "renderer"

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` when the renderer can be used in this process."""

    @abstractmethod
    def compose(self, job: FrameJob) -> None:
        """Write one finished still to ``job.output_path``."""

    @abstractmethod
    def encode(self, job: EncodeJob) -> bytes:
        """Encode the ordered stills and return the GIF bytes."""


def build_overlay_filter(layers: Sequence[TileLayer]) -> Optional[str]:
    """Chain one ``overlay`` per layer on top of the background input ``[0:v]``."""
    if not layers:
        return None
    parts: List[str] = []
    previous = "[0:v]"
    for position, layer in enumerate(layers, start=1):
        output = "[vbase]" if position == len(layers) else f"[v{position}]"
        parts.append(f"{previous}[{position}:v]overlay=x={layer.x}:y={layer.y}:format=auto{output}")
        previous = output
    return ";".join(parts)


def build_frame_filter(job: FrameJob) -> str:
    """Build the full filter graph for one frame, ending at ``[vout]``."""
    overlay = build_overlay_filter(job.layers)
    base = "[vbase]" if overlay else "[0:v]"
    crop_x, crop_y, width, height = job.crop
    font = f":fontfile={escape_drawtext(job.font_file)}" if job.font_file else ""

    steps = [
        f"{base}crop={width}:{height}:{crop_x}:{crop_y}[vcrop]",
        "[vcrop]"
        "drawbox=x=(iw/2)-1:y=(ih/2)-8:w=2:h=16:color=white@0.95:t=fill,"
        "drawbox=x=(iw/2)-8:y=(ih/2)-1:w=16:h=2:color=white@0.95:t=fill,"
        "drawbox=x=(iw/2)-2:y=(ih/2)-2:w=4:h=4:color=black@0.85:t=fill"
        + ("[vmark]" if job.captions else "[vout]"),
    ]
    if job.captions:
        steps += [
            f"[vmark]drawtext=text='{escape_drawtext(job.label)}'{font}:expansion=none"
            ":fontcolor=white:fontsize=24:borderw=3:bordercolor=black"
            ":x=(w-text_w)/2:y=h-th-34[vtxt]",
            f"[vtxt]drawtext=text='{escape_drawtext(job.generated_label)}'{font}:expansion=none"
            ":fontcolor=white:fontsize=14:borderw=2:bordercolor=black"
            ":x=(w-text_w)/2:y=h-th-8[vout]",
        ]
    if overlay:
        steps.insert(0, overlay)
    return ";".join(steps)


class FfmpegRenderer(Renderer):
    """Renderer backed by the ``ffmpeg`` command-line toolchain."""

    name = "ffmpeg"

    def __init__(
        self,
        binary: str = "ffmpeg",
        *,
        timeout_seconds: float = 60.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    def is_available(self) -> bool:
        return probe_ffmpeg(self.binary)

    def compose(self, job: FrameJob) -> None:
        args = [
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "lavfi",
            "-i",
            f"color=c={job.background_color}:s={job.canvas_width}x{job.canvas_height}:d=1",
        ]
        for layer in job.layers:
            args.extend(["-i", str(layer.path)])
        args.extend(
            [
                "-filter_complex",
                build_frame_filter(job),
                "-map",
                "[vout]",
                "-frames:v",
                "1",
                str(job.output_path),
            ]
        )
        self._run(args)

    def encode(self, job: EncodeJob) -> bytes:
        if not job.frame_paths:
            raise RadarRenderError(RenderErrorKind.TOOLCHAIN_FAILED, detail="no_frames_to_encode")
        pattern = job.frame_paths[0].parent / FRAME_PATTERN
        args = [
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-framerate",
            f"{job.fps:g}",
            "-i",
            str(pattern),
            "-filter_complex",
            "split[s0][s1];[s0]palettegen=stats_mode=diff[p];[s1][p]paletteuse=dither=bayer:bayer_scale=3",
            "-loop",
            "0",
            str(job.output_path),
        ]
        self._run(args)
        return job.output_path.read_bytes()

    def _run(self, args: Sequence[str]) -> None:
        cmd = [self.binary, *args]
        try:
            completed = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise RadarRenderError(
                RenderErrorKind.TOOLCHAIN_FAILED,
                detail="ffmpeg_timeout",
                stderr_tail=_stderr_tail(exc.stderr),
            ) from exc
        except OSError as exc:
            raise RadarRenderError(RenderErrorKind.TOOLCHAIN_UNAVAILABLE, detail=str(exc)) from exc

        if completed.returncode != 0:
            tail = _stderr_tail(completed.stderr)
            kind = RenderErrorKind.TOOLCHAIN_FAILED
            if tail and any(marker in tail.lower() for marker in FONT_ERROR_MARKERS):
                kind = RenderErrorKind.FONT_UNAVAILABLE
            raise RadarRenderError(kind, detail=f"exit status {completed.returncode}", stderr_tail=tail)


class RenderPipeline:
    """Run one render attempt inside a private working directory."""

    def __init__(
        self,
        compositor: FrameCompositor,
        renderer: Renderer,
        *,
        logger: Optional[logging.Logger] = None,
        temp_root: Optional[Path] = None,
    ) -> None:
        self.compositor = compositor
        self.renderer = renderer
        self.logger = logger or logging.getLogger(__name__)
        self.temp_root = temp_root

    def run(self, plan: RenderPlan) -> bytes:
        """Render ``plan`` and return the encoded GIF bytes.

        Frames are composed strictly in order because the encoder consumes the
        numbered still sequence. The working directory is removed on every exit
        path.
        """

        started = perf_counter()
        work_dir = Path(tempfile.mkdtemp(prefix="radar-gif-", dir=self.temp_root))
        self.logger.debug(
            "Rendering %s frames from %s tiles in %s",
            len(plan.frames),
            len(plan.tiles),
            work_dir,
        )
        try:
            map_layers = self.compositor.fetch_map_layers(plan, work_dir)

            frame_paths: List[Path] = []
            captions = True
            total = len(plan.frames)
            for position in range(total):
                radar_layers = self.compositor.fetch_radar_layers(plan, position, work_dir)
                job = self.compositor.compose_frame(
                    plan, position, map_layers, radar_layers, work_dir, captions=captions
                )
                # A missing font only drops captions for the rest of this render.
                captions = job.captions
                frame_paths.append(job.output_path)
                self.logger.debug("Frame rendering progress: %s/%s frames", position + 1, total)

            body = self.renderer.encode(
                EncodeJob(
                    frame_paths=tuple(frame_paths),
                    fps=plan.fps,
                    output_path=work_dir / "radar.gif",
                )
            )
            if not body.startswith(GIF_SIGNATURES):
                raise RadarRenderError(RenderErrorKind.TOOLCHAIN_FAILED, detail="invalid_gif_output")

            self.logger.debug(
                "Rendered %sx%s GIF (%s bytes) in %.2fs",
                plan.output_width,
                plan.output_height,
                len(body),
                perf_counter() - started,
            )
            return body
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)


__all__ = [
    "EncodeJob",
    "FfmpegRenderer",
    "GIF_SIGNATURES",
    "RenderPipeline",
    "Renderer",
    "build_frame_filter",
    "build_overlay_filter",
    "probe_ffmpeg",
]
