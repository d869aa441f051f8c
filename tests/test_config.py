import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from radar_animation.config import Config, load_config, parse_config  # noqa: E402


def test_missing_config_file_uses_defaults(tmp_path):
    config = load_config(tmp_path / "missing.json", env={})

    assert isinstance(config, Config)
    assert config.radar.lat == -27.47
    assert config.radar.effective_zoom == 6
    assert config.gif.width == 800
    assert config.gif.height == 480
    assert config.gif.max_age_seconds == 360


def test_values_are_clamped_and_garbage_falls_back(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "radar": {"zoom": 9, "provider_max_zoom": 7, "refresh_seconds": 5},
                "gif": {"width": 5000, "height": "abc", "frame_delay_ms": 10, "max_frames": 0},
            }
        ),
        encoding="utf-8",
    )

    config = load_config(path, env={})

    assert config.radar.effective_zoom == 7
    assert config.radar.refresh_seconds == 30
    assert config.gif.width == 1920
    assert config.gif.height == 480
    assert config.gif.frame_delay_ms == 50
    assert config.gif.max_frames == 1
    assert config.gif.max_age_seconds == 180


def test_environment_overrides(tmp_path):
    env = {
        "RADAR_LAT": "-33.87",
        "RADAR_LON": "151.21",
        "TZ": "Australia/Sydney",
        "FFMPEG_PATH": "/opt/ffmpeg/bin/ffmpeg",
        "RADAR_GIF_CACHE_DIR": str(tmp_path / "gifs"),
        "LOG_LEVEL": "debug",
    }

    config = parse_config({}, env)

    assert config.radar.lat == -33.87
    assert config.radar.lon == 151.21
    assert config.time_zone == "Australia/Sydney"
    assert config.gif.ffmpeg_binary == "/opt/ffmpeg/bin/ffmpeg"
    assert config.gif.cache_dir == tmp_path / "gifs"
    assert config.log_level == "DEBUG"


def test_fallback_templates_can_be_cleared():
    config = parse_config({"map": {"fallback_tile_url_templates": []}}, {})

    assert config.map.fallback_tile_url_templates == ()
