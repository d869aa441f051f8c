"""
Radar animation service.

Polls RainViewer for radar frames, renders the animated radar GIF in the
background and serves the freshest cached copy to callers.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, List, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from dotenv import load_dotenv

from radar_animation.config import Config, load_config
from radar_animation.coordinator import RenderCoordinator
from radar_animation.errors import RadarRenderError, RenderErrorKind
from radar_animation.logging_setup import configure_logging
from radar_animation.models import CacheMeta, GifResult
from radar_animation.rendering import Renderer
from radar_animation.scheduler import schedule_radar_polling, start_schedule
from radar_animation.sources import MapTileClient, RainViewerClient, build_tile_fetchers


class RadarAnimationService:
    """Wire configuration, tile sources, the render coordinator and schedules."""

    def __init__(
        self,
        config_file: str = "config.json",
        *,
        config: Optional[Config] = None,
        renderer: Optional[Renderer] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        load_dotenv()
        self.config_path = Path(config_file)
        self.config = config or load_config(self.config_path)
        self.logger = logger or configure_logging(
            level=self.config.log_level,
            log_file=self.config.log_file,
        )

        self.radar_client = RainViewerClient(
            self.config.radar,
            self.logger,
            http_timeout=self.config.map.http_timeout_seconds,
        )
        self.map_client = MapTileClient(self.config.map, self.logger)
        fetch_map_tile, fetch_radar_tile = build_tile_fetchers(self.map_client, self.radar_client)
        self.coordinator = RenderCoordinator(
            self.config,
            fetch_map_tile=fetch_map_tile,
            fetch_radar_tile=fetch_radar_tile,
            get_radar_state=self.radar_client.get_state,
            renderer=renderer,
            logger=self.logger,
        )
        self._stop_callbacks: List[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    def fetch_animation(self, width: Any = None, height: Any = None) -> GifResult:
        """Return the radar GIF for the dashboard, rendering on demand if needed.

        Raises :class:`RadarRenderError` when nothing can be rendered or served.
        """

        return self.coordinator.render_gif(width, height)

    def warm_animation(self, width: Any = None, height: Any = None) -> bool:
        return self.coordinator.warm_gif(width, height)

    def can_render(self) -> bool:
        return self.coordinator.can_render()

    def latest_meta(self) -> Optional[CacheMeta]:
        return self.coordinator.get_latest_meta()

    def render_to_file(self, output_path: Path, width: Any = None, height: Any = None) -> GifResult:
        """Refresh radar metadata, render once and write the GIF to ``output_path``."""
        self.radar_client.refresh()
        if not self.can_render():
            raise RadarRenderError(RenderErrorKind.TOOLCHAIN_UNAVAILABLE)
        result = self.coordinator.render_once(width, height)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(result.body)
        self.logger.info("Wrote radar GIF to %s (%s bytes)", output_path, len(result.body))
        return result

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self, scheduler: Any) -> None:
        """Register radar polling and periodic rendering on ``scheduler``."""
        gif = self.config.gif
        self._stop_callbacks.append(
            schedule_radar_polling(self.radar_client, scheduler, self.config.radar, self.logger)
        )
        self._stop_callbacks.append(
            start_schedule(
                self.coordinator,
                scheduler,
                width=gif.width,
                height=gif.height,
                interval_seconds=gif.render_interval_seconds,
                logger=self.logger,
            )
        )

    def stop(self) -> None:
        while self._stop_callbacks:
            self._stop_callbacks.pop()()
        self.coordinator.shutdown(wait=False)

    def run(self) -> None:
        """Run the service until interrupted."""
        scheduler = BlockingScheduler()
        radar = self.config.radar
        gif = self.config.gif

        self.logger.info("Radar animation service started")
        self.logger.info(
            "Centre %.4f,%.4f zoom %s; %sx%s GIF every %ss, cache %s",
            radar.lat,
            radar.lon,
            radar.effective_zoom,
            gif.width,
            gif.height,
            gif.render_interval_seconds,
            gif.cache_dir,
        )
        if not self.can_render():
            self.logger.warning("ffmpeg binary %r not usable; only cached GIFs will be served", gif.ffmpeg_binary)

        try:
            self.start(scheduler)
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            self.logger.info("Radar animation service stopped")
            self.stop()
            scheduler.shutdown(wait=False)


__all__ = ["RadarAnimationService"]
