import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from radar_animation.labels import (  # noqa: E402
    build_frame_labels,
    escape_drawtext,
    format_generated_label,
    normalize_epoch_seconds,
    resolve_timezone,
)
from radar_animation.models import Frame  # noqa: E402


def _epoch(hour, minute):
    return int(datetime(2025, 3, 1, hour, minute, tzinfo=timezone.utc).timestamp())


def _frames(*times):
    return [Frame(time=value, path=f"/v2/radar/{value}", index=i) for i, value in enumerate(times)]


def test_labels_use_frame_times_when_stream_is_fresh():
    frames = _frames(_epoch(10, 0), _epoch(10, 10))
    now = _epoch(10, 15)

    labels = build_frame_labels(frames, timezone.utc, now, 180 * 60)

    assert labels == ["10:00", "10:10"]


def test_labels_shift_forward_when_stream_is_stale():
    frames = _frames(_epoch(6, 0), _epoch(6, 10))
    now = _epoch(12, 10)

    labels = build_frame_labels(frames, timezone.utc, now, 180 * 60)

    assert labels == ["12:00", "12:10"]


def test_zero_threshold_disables_the_shift():
    frames = _frames(_epoch(6, 0), _epoch(6, 10))

    labels = build_frame_labels(frames, timezone.utc, _epoch(12, 10), 0)

    assert labels == ["06:00", "06:10"]


def test_millisecond_timestamps_are_accepted():
    assert normalize_epoch_seconds(1_700_000_000_000) == 1_700_000_000
    assert normalize_epoch_seconds(1_700_000_000) == 1_700_000_000
    assert normalize_epoch_seconds("garbage") == 0.0


def test_generated_label_has_seconds():
    assert format_generated_label(_epoch(9, 5) + 7, timezone.utc) == "Generated: 09:05:07"


def test_drawtext_escaping_covers_filter_metacharacters():
    escaped = escape_drawtext("Generated: 10:05, [x]; 50% it's")

    assert escaped == "Generated\\: 10\\:05\\, \\[x\\]\\; 50% it\\'s"
    assert escape_drawtext(None) == ""


def test_percent_sign_is_left_for_literal_drawtext():
    assert escape_drawtext("100%") == "100%"


def test_unknown_time_zone_falls_back_to_local():
    assert resolve_timezone("Not/A_Zone") is None
    assert resolve_timezone("") is None
