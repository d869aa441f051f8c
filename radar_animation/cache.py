"""Durable on-disk GIF caches.

Two layouts share one directory:

* the latest slot (``radar-latest.gif`` plus a JSON sidecar) always holds the
  most recently completed render and is what the dashboard reads first;
* the keyed history (``radar-<keyhash>-<epoch-ms>.gif``) keeps one file per
  render configuration and timestamp, supports fallback to the newest file of
  any key and is pruned by age.

Every write lands in a temporary file in the same directory and is published
by a single rename.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import NamedTuple, Optional

from radar_animation.errors import RenderErrorKind
from radar_animation.models import CacheMeta

GIF_FILENAME = "radar-latest.gif"
GIF_TMP_FILENAME = "radar-latest.gif.tmp"
META_FILENAME = "radar-latest.meta.json"
META_TMP_FILENAME = "radar-latest.meta.json.tmp"

_KEYED_NAME_RE = re.compile(r"^radar-([a-f0-9]{16})-(\d+)\.gif$")


def _atomic_write(target: Path, data: bytes) -> None:
    tmp_path = target.with_name(target.name + ".tmp")
    with tmp_path.open("wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, target)


def _parse_rendered_at(value: object) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LatestSlotCache:
    """Single "latest" GIF with a width/height/renderedAt sidecar."""

    def __init__(
        self,
        cache_dir: Path,
        *,
        max_age_seconds: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.max_age_seconds = max_age_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._write_lock = threading.Lock()

    @property
    def gif_path(self) -> Path:
        return self.cache_dir / GIF_FILENAME

    @property
    def meta_path(self) -> Path:
        return self.cache_dir / META_FILENAME

    def publish(self, body: bytes, width: int, height: int, *, rendered_at: Optional[datetime] = None) -> CacheMeta:
        """Atomically replace the latest GIF, then its sidecar."""
        meta = CacheMeta(
            width=width,
            height=height,
            rendered_at=(rendered_at or datetime.now(timezone.utc)).replace(microsecond=0),
            size=len(body),
        )
        with self._write_lock:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            # Data first: a sidecar must never describe a GIF that is not in place yet.
            _atomic_write(self.gif_path, body)
            _atomic_write(self.meta_path, json.dumps(meta.to_dict()).encode("utf-8"))
        return meta

    def read_meta(self) -> Optional[CacheMeta]:
        """Parse the sidecar; any problem is reported as a miss."""
        try:
            raw = json.loads(self.meta_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            self.logger.debug("Latest GIF cache miss: no metadata sidecar in %s", self.cache_dir)
            return None
        except (OSError, ValueError) as exc:
            self.logger.debug("Latest GIF cache miss (%s): %s", RenderErrorKind.CACHE_UNREADABLE.value, exc)
            return None
        if not isinstance(raw, dict):
            return None

        try:
            width = int(raw.get("width") or 0)
            height = int(raw.get("height") or 0)
        except (TypeError, ValueError):
            return None
        if width <= 0 or height <= 0:
            self.logger.debug("Latest GIF cache has invalid dimensions %sx%s", width, height)
            return None

        rendered_at = _parse_rendered_at(raw.get("renderedAt"))
        if rendered_at is None:
            self.logger.debug("Latest GIF cache has unparsable renderedAt %r", raw.get("renderedAt"))
            return None

        size = raw.get("bytes")
        return CacheMeta(
            width=width,
            height=height,
            rendered_at=rendered_at,
            size=size if isinstance(size, int) and size > 0 else None,
        )

    def get_latest(
        self,
        *,
        width: Optional[int] = None,
        height: Optional[int] = None,
        now: Optional[float] = None,
    ) -> Optional[bytes]:
        """Return the latest GIF when its sidecar is valid, fresh and matches the size."""
        meta = self.read_meta()
        if meta is None:
            return None
        if (width is not None and meta.width != width) or (height is not None and meta.height != height):
            self.logger.debug(
                "Latest GIF is %sx%s, requested %sx%s",
                meta.width,
                meta.height,
                width,
                height,
            )
            return None

        current = time.time() if now is None else now
        age = current - meta.rendered_at.timestamp()
        if age > self.max_age_seconds:
            self.logger.debug("Latest GIF is stale (%.0fs old, max %ss)", age, self.max_age_seconds)
            return None

        try:
            body = self.gif_path.read_bytes()
        except OSError:
            return None
        if meta.size is not None and len(body) != meta.size:
            # Caught between the data rename and the sidecar rename.
            self.logger.debug("Latest GIF size %s does not match sidecar %s", len(body), meta.size)
            return None
        return body


class KeyedEntry(NamedTuple):
    key_hash: str
    timestamp_ms: int


def hash_cache_key(cache_key: str) -> str:
    return hashlib.sha1(str(cache_key or "").encode("utf-8")).hexdigest()[:16]


def build_cache_filename(cache_key: str, at_ms: int) -> str:
    return f"radar-{hash_cache_key(cache_key)}-{max(0, int(at_ms))}.gif"


def parse_cache_filename(name: str) -> Optional[KeyedEntry]:
    match = _KEYED_NAME_RE.match(str(name or ""))
    if not match:
        return None
    return KeyedEntry(key_hash=match.group(1), timestamp_ms=int(match.group(2)))


class KeyedGifCache:
    """History of GIFs addressed by render configuration, pruned by age."""

    def __init__(
        self,
        cache_dir: Path,
        *,
        retention_seconds: float,
        sweep_interval_seconds: float = 3600,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.retention_seconds = retention_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._last_swept_at: Optional[float] = None
        self._sweep_lock = threading.Lock()

    def publish(self, cache_key: str, body: bytes, *, now: Optional[float] = None) -> Path:
        current = time.time() if now is None else now
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        target = self.cache_dir / build_cache_filename(cache_key, int(current * 1000))
        _atomic_write(target, body)
        return target

    def _newest(self, wanted_hash: Optional[str], max_age_seconds: float, now: float) -> Optional[Path]:
        if not self.cache_dir.is_dir():
            return None
        now_ms = now * 1000
        limit_ms = max_age_seconds * 1000
        newest_name: Optional[str] = None
        newest_ts = -1
        for entry in os.scandir(self.cache_dir):
            parsed = parse_cache_filename(entry.name)
            if parsed is None:
                continue
            if wanted_hash is not None and parsed.key_hash != wanted_hash:
                continue
            if limit_ms > 0 and (now_ms - parsed.timestamp_ms) > limit_ms:
                continue
            if parsed.timestamp_ms > newest_ts:
                newest_ts = parsed.timestamp_ms
                newest_name = entry.name
        return self.cache_dir / newest_name if newest_name else None

    def find_newest(self, cache_key: str, max_age_seconds: float, now: float) -> Optional[Path]:
        return self._newest(hash_cache_key(cache_key), max_age_seconds, now)

    def find_newest_any(self, max_age_seconds: float, now: float) -> Optional[Path]:
        return self._newest(None, max_age_seconds, now)

    def sweep_expired(self, max_age_seconds: float, now: float) -> int:
        """Delete every keyed GIF older than the retention window; return the count."""
        if max_age_seconds <= 0 or not self.cache_dir.is_dir():
            return 0
        now_ms = now * 1000
        limit_ms = max_age_seconds * 1000
        removed = 0
        for entry in os.scandir(self.cache_dir):
            parsed = parse_cache_filename(entry.name)
            if parsed is None or (now_ms - parsed.timestamp_ms) <= limit_ms:
                continue
            try:
                os.unlink(entry.path)
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                self.logger.warning("Failed to remove expired GIF %s: %s", entry.path, exc)
        if removed:
            self.logger.info("Removed %s expired GIF(s) from %s", removed, self.cache_dir)
        return removed

    def maybe_sweep(self, now: Optional[float] = None) -> int:
        """Sweep at most once per ``sweep_interval_seconds``."""
        current = time.time() if now is None else now
        with self._sweep_lock:
            if (
                self._last_swept_at is not None
                and (current - self._last_swept_at) < self.sweep_interval_seconds
            ):
                return 0
            self._last_swept_at = current
        return self.sweep_expired(self.retention_seconds, current)

    def read(self, path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except OSError as exc:
            self.logger.debug("Cached GIF %s unreadable: %s", path, exc)
            return None


__all__ = [
    "GIF_FILENAME",
    "GIF_TMP_FILENAME",
    "KeyedEntry",
    "KeyedGifCache",
    "LatestSlotCache",
    "META_FILENAME",
    "META_TMP_FILENAME",
    "build_cache_filename",
    "hash_cache_key",
    "parse_cache_filename",
]
