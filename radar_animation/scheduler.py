"""Scheduling for background GIF renders and radar metadata polling."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from radar_animation.config import RadarSettings, _parse_int
from radar_animation.errors import RadarRenderError

RENDER_JOB_ID = "radar_gif_render"
RADAR_REFRESH_JOB_ID = "radar_refresh"
RADAR_STARTUP_RETRY_JOB_ID = "radar_startup_retry"

StopFn = Callable[[], None]


def _remove_job(scheduler: Any, job_id: str) -> None:
    try:
        scheduler.remove_job(job_id)
    except JobLookupError:
        pass


class RenderSchedule:
    """Render immediately, then again ``interval`` seconds after each attempt ends.

    Every tick is a one-shot job, re-armed only once the previous render has
    finished, so a slow render can never overlap the next one.
    """

    def __init__(
        self,
        coordinator: Any,
        scheduler: Any,
        *,
        width: Any = None,
        height: Any = None,
        interval_seconds: Any = 120,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.width = width
        self.height = height
        self.interval_seconds = _parse_int(interval_seconds, 120, 5, 600)
        self.logger = logger or logging.getLogger(__name__)
        self._stopped = False
        self._lock = threading.Lock()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> StopFn:
        self._arm(datetime.now())
        return self.stop

    def _arm(self, run_date: datetime) -> None:
        with self._lock:
            if self._stopped:
                return
            self.scheduler.add_job(
                self._tick,
                trigger=DateTrigger(run_date=run_date),
                id=RENDER_JOB_ID,
                name="Render Radar GIF",
                replace_existing=True,
                misfire_grace_time=None,
            )

    def _tick(self) -> None:
        if self._stopped:
            return
        self.logger.debug("Scheduled radar GIF render (interval %ss)", self.interval_seconds)
        try:
            self.coordinator.render_once(self.width, self.height)
        except RadarRenderError as exc:
            self.logger.warning("Scheduled radar GIF render failed: %s", exc.summary())
        except Exception as exc:
            self.logger.warning("Scheduled radar GIF render failed: %s", exc)
        finally:
            self._arm(datetime.now() + timedelta(seconds=self.interval_seconds))

    def stop(self) -> None:
        """Cancel the next tick; a render already in progress runs to completion."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            _remove_job(self.scheduler, RENDER_JOB_ID)


def start_schedule(
    coordinator: Any,
    scheduler: Any,
    *,
    width: Any = None,
    height: Any = None,
    interval_seconds: Any = 120,
    logger: Optional[logging.Logger] = None,
) -> StopFn:
    """Start periodic rendering and return the function that stops it.

    When the renderer is unavailable nothing is scheduled and a no-op is
    returned.
    """

    log = logger or logging.getLogger(__name__)
    if not coordinator.can_render():
        log.warning("Radar GIF schedule disabled: renderer unavailable")
        return lambda: None

    schedule = RenderSchedule(
        coordinator,
        scheduler,
        width=width,
        height=height,
        interval_seconds=interval_seconds,
        logger=log,
    )
    return schedule.start()


class RadarPoller:
    """Keep the radar frame list fresh, retrying quickly until the first frames arrive."""

    def __init__(
        self,
        radar_client: Any,
        scheduler: Any,
        settings: RadarSettings,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.radar_client = radar_client
        self.scheduler = scheduler
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.startup_attempts = 0
        self._refresh_lock = threading.Lock()
        self._retry_active = False

    def has_frames(self) -> bool:
        return self.radar_client.get_state().available

    def refresh(self) -> None:
        """Refresh radar metadata unless a refresh is already running."""
        if not self._refresh_lock.acquire(blocking=False):
            self.logger.debug("Radar refresh already in progress; skipping")
            return
        try:
            self.radar_client.refresh()
        except Exception as exc:
            self.logger.warning("Radar refresh failed: %s", exc)
        finally:
            self._refresh_lock.release()
        if self.has_frames():
            self._cancel_startup_retry()

    def _startup_retry(self) -> None:
        if self.has_frames():
            self._cancel_startup_retry()
            return
        self.startup_attempts += 1
        if self.startup_attempts > self.settings.startup_retry_max_attempts:
            self.logger.warning(
                "Radar still has no frames after %s startup retries",
                self.settings.startup_retry_max_attempts,
            )
            self._cancel_startup_retry()
            return
        self.refresh()

    def _cancel_startup_retry(self) -> None:
        if self._retry_active:
            self._retry_active = False
            _remove_job(self.scheduler, RADAR_STARTUP_RETRY_JOB_ID)

    def start(self) -> StopFn:
        self.refresh()

        if self.settings.startup_retry_max_attempts > 0 and not self.has_frames():
            self._retry_active = True
            self.scheduler.add_job(
                self._startup_retry,
                trigger=IntervalTrigger(seconds=self.settings.startup_retry_seconds),
                id=RADAR_STARTUP_RETRY_JOB_ID,
                name="Radar Startup Retry",
                max_instances=1,
                replace_existing=True,
            )

        self.scheduler.add_job(
            self.refresh,
            trigger=IntervalTrigger(seconds=self.settings.refresh_seconds),
            id=RADAR_REFRESH_JOB_ID,
            name="Refresh Radar Metadata",
            max_instances=1,
            replace_existing=True,
        )
        return self.stop

    def stop(self) -> None:
        _remove_job(self.scheduler, RADAR_REFRESH_JOB_ID)
        self._cancel_startup_retry()


def schedule_radar_polling(
    radar_client: Any,
    scheduler: Any,
    settings: RadarSettings,
    logger: Optional[logging.Logger] = None,
) -> StopFn:
    return RadarPoller(radar_client, scheduler, settings, logger).start()


__all__ = [
    "RADAR_REFRESH_JOB_ID",
    "RADAR_STARTUP_RETRY_JOB_ID",
    "RENDER_JOB_ID",
    "RadarPoller",
    "RenderSchedule",
    "schedule_radar_polling",
    "start_schedule",
]
