"""Render coordination: deduplication, caching and graceful degradation."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Tuple

from radar_animation.cache import KeyedGifCache, LatestSlotCache
from radar_animation.compositor import FrameCompositor, MapTileFetcher, RadarTileFetcher
from radar_animation.config import Config, _parse_int
from radar_animation.errors import RadarRenderError, RenderErrorKind
from radar_animation.models import CacheMeta, GifResult, RadarState, RenderPlan
from radar_animation.planning import MAX_CANVAS_PX, build_render_plan
from radar_animation.rendering import FfmpegRenderer, Renderer, RenderPipeline

MEMO_TTL_SECONDS = 120
MEMO_MAX_ENTRIES = 6


def _requested_dimension(value: Any) -> Optional[int]:
    if value is None:
        return None
    return _parse_int(value, None, 64, MAX_CANVAS_PX)


class RenderCoordinator:
    """Entry points for rendering and serving the radar animation.

    At most one render runs per cache key; concurrent callers asking for the
    same key share the in-flight result.
    """

    def __init__(
        self,
        config: Config,
        *,
        fetch_map_tile: MapTileFetcher,
        fetch_radar_tile: RadarTileFetcher,
        get_radar_state: Callable[[], RadarState],
        renderer: Optional[Renderer] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.get_radar_state = get_radar_state
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        gif = config.gif
        self.renderer = renderer or FfmpegRenderer(
            gif.ffmpeg_binary,
            timeout_seconds=gif.ffmpeg_timeout_seconds,
            logger=self.logger,
        )
        self.compositor = FrameCompositor(
            self.renderer,
            fetch_map_tile,
            fetch_radar_tile,
            logger=self.logger,
            fetch_workers=gif.tile_fetch_workers,
        )
        self.pipeline = RenderPipeline(self.compositor, self.renderer, logger=self.logger)
        self.latest_cache = LatestSlotCache(
            gif.cache_dir,
            max_age_seconds=gif.max_age_seconds,
            logger=self.logger,
        )
        self.keyed_cache = KeyedGifCache(
            gif.cache_dir,
            retention_seconds=gif.disk_retention_seconds,
            sweep_interval_seconds=gif.sweep_interval_seconds,
            logger=self.logger,
        )

        self._pending: Dict[str, "Future[GifResult]"] = {}
        self._pending_lock = threading.Lock()
        self._memo: Dict[str, Tuple[float, GifResult]] = {}
        self._memo_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="radar-gif")

    # ------------------------------------------------------------------
    # Availability and planning
    # ------------------------------------------------------------------

    def can_render(self) -> bool:
        return self.renderer.is_available()

    def build_plan(self, width: Any = None, height: Any = None) -> RenderPlan:
        return build_render_plan(
            self.config,
            self.get_radar_state(),
            now=self.clock(),
            width=width,
            height=height,
        )

    # ------------------------------------------------------------------
    # Cache reads
    # ------------------------------------------------------------------

    def get_latest_gif(self, width: Optional[int] = None, height: Optional[int] = None) -> Optional[GifResult]:
        """Read the latest-slot GIF. Never renders."""
        body = self.latest_cache.get_latest(width=width, height=height, now=self.clock())
        if body is None:
            return None
        self.logger.debug("Latest GIF cache hit (%s bytes)", len(body))
        return GifResult(body=body)

    def get_latest_meta(self) -> Optional[CacheMeta]:
        return self.latest_cache.read_meta()

    def _memo_get(self, cache_key: str, now: float) -> Optional[GifResult]:
        with self._memo_lock:
            entry = self._memo.get(cache_key)
            if entry is not None and (now - entry[0]) < MEMO_TTL_SECONDS:
                return entry[1]
        return None

    def _memo_put(self, cache_key: str, result: GifResult, now: float) -> None:
        with self._memo_lock:
            self._memo[cache_key] = (now, result)
            while len(self._memo) > MEMO_MAX_ENTRIES:
                oldest = min(self._memo, key=lambda key: self._memo[key][0])
                del self._memo[oldest]

    def read_cached(self, cache_key: str) -> Optional[GifResult]:
        """Memo, then the newest keyed file for ``cache_key`` within retention."""
        now = self.clock()
        memo = self._memo_get(cache_key, now)
        if memo is not None:
            return memo

        self.keyed_cache.maybe_sweep(now)
        path = self.keyed_cache.find_newest(cache_key, self.keyed_cache.retention_seconds, now)
        if path is None:
            return None
        body = self.keyed_cache.read(path)
        if body is None:
            return None
        result = GifResult(body=body)
        self._memo_put(cache_key, result, now)
        return result

    def read_latest_any(self) -> Optional[GifResult]:
        """Newest non-expired keyed GIF of any configuration, marked as a fallback."""
        now = self.clock()
        self.keyed_cache.maybe_sweep(now)
        path = self.keyed_cache.find_newest_any(self.keyed_cache.retention_seconds, now)
        if path is None:
            return None
        body = self.keyed_cache.read(path)
        if body is None:
            return None
        return GifResult(body=body, is_fallback=True)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _claim(self, cache_key: str) -> Tuple["Future[GifResult]", bool]:
        with self._pending_lock:
            future = self._pending.get(cache_key)
            if future is not None:
                return future, False
            future = Future()
            self._pending[cache_key] = future
            return future, True

    def _run_claimed(self, plan: RenderPlan, future: "Future[GifResult]") -> GifResult:
        try:
            result = self._render_and_publish(plan)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._pending_lock:
                if self._pending.get(plan.cache_key) is future:
                    del self._pending[plan.cache_key]

    def _render_shared(self, plan: RenderPlan) -> GifResult:
        future, owner = self._claim(plan.cache_key)
        if not owner:
            self.logger.debug("Joining in-flight render for %s", plan.cache_key)
            return future.result()
        return self._run_claimed(plan, future)

    def _render_and_publish(self, plan: RenderPlan) -> GifResult:
        self.logger.info(
            "Rendering radar GIF %sx%s (%s frames, %s tiles, zoom %s)",
            plan.output_width,
            plan.output_height,
            len(plan.frames),
            len(plan.tiles),
            plan.z,
        )
        try:
            body = self.pipeline.run(plan)
        except RadarRenderError as exc:
            self.logger.warning("Radar GIF render failed: %s", exc.summary())
            raise

        now = self.clock()
        try:
            self.latest_cache.publish(body, plan.output_width, plan.output_height)
            self.keyed_cache.publish(plan.cache_key, body, now=now)
        except OSError as exc:
            self.logger.warning("Failed to persist radar GIF in %s: %s", self.config.gif.cache_dir, exc)
        self.keyed_cache.maybe_sweep(now)

        result = GifResult(body=body)
        self._memo_put(plan.cache_key, result, now)
        self.logger.info(
            "Radar GIF rendered: %s bytes, %sx%s",
            len(body),
            plan.output_width,
            plan.output_height,
        )
        return result

    def _require_renderer(self) -> None:
        if not self.can_render():
            error = RadarRenderError(
                RenderErrorKind.TOOLCHAIN_UNAVAILABLE,
                detail=f"{self.renderer.name} unavailable",
            )
            self.logger.warning("Radar GIF renderer unavailable: %s", error.summary())
            raise error

    def render_once(self, width: Any = None, height: Any = None) -> GifResult:
        """Render now (or join the in-flight render for the same configuration)."""
        self._require_renderer()
        plan = self.build_plan(width, height)
        return self._render_shared(plan)

    def render_gif(self, width: Any = None, height: Any = None) -> GifResult:
        """Serve the freshest animation available, degrading to stale output.

        Order: latest slot, keyed history for this configuration, a fresh or
        in-flight render, then the newest cached GIF of any configuration.
        Raises the render error when nothing at all is cached.
        """

        latest = self.get_latest_gif(_requested_dimension(width), _requested_dimension(height))
        if latest is not None:
            return latest

        try:
            plan = self.build_plan(width, height)
            cached = self.read_cached(plan.cache_key)
            if cached is not None:
                return cached
            self._require_renderer()
            return self._render_shared(plan)
        except Exception as exc:
            fallback = self.read_latest_any()
            if fallback is not None:
                reason = exc.summary() if isinstance(exc, RadarRenderError) else exc
                self.logger.warning("Serving cached radar GIF after failure: %s", reason)
                return fallback
            raise

    def warm_gif(self, width: Any = None, height: Any = None) -> bool:
        """Start a background render unless one is running or cached.

        Returns ``False`` only when rendering is impossible right now.
        """

        if not self.can_render():
            self.logger.warning("Skipping GIF warm-up: renderer unavailable")
            return False
        try:
            plan = self.build_plan(width, height)
        except RadarRenderError as exc:
            self.logger.warning("Skipping GIF warm-up: %s", exc.code)
            return False

        if self.read_cached(plan.cache_key) is not None:
            return True

        future, owner = self._claim(plan.cache_key)
        if not owner:
            self.logger.debug("Skipping GIF warm-up: render in progress")
            return True

        def run() -> None:
            try:
                self._run_claimed(plan, future)
            except Exception as exc:
                self.logger.warning("Background GIF warm-up failed: %s", exc)

        try:
            self._executor.submit(run)
        except RuntimeError as exc:
            future.set_exception(exc)
            with self._pending_lock:
                if self._pending.get(plan.cache_key) is future:
                    self._pending.pop(plan.cache_key)
            self.logger.warning("Skipping GIF warm-up: %s", exc)
            return False
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["RenderCoordinator"]
