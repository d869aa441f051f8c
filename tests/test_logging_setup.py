import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from radar_animation.logging_setup import (  # noqa: E402
    configure_logging,
    log_file_candidates,
    open_log_file,
    parse_level,
)


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_parse_level_accepts_names_and_numbers():
    assert parse_level("debug") == logging.DEBUG
    assert parse_level(" Warning ") == logging.WARNING
    assert parse_level(logging.ERROR) == logging.ERROR
    assert parse_level("chatty") == logging.INFO
    assert parse_level(None, default=logging.WARNING) == logging.WARNING


def test_relative_log_file_resolves_under_working_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    assert log_file_candidates("logs/radar.log") == [tmp_path / "logs" / "radar.log", tmp_path / "radar.log"]
    assert log_file_candidates("radar.log") == [tmp_path / "radar.log"]


def test_unwritable_log_dir_falls_back_to_working_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "blocked").write_text("not a directory")

    handler, notes = open_log_file(tmp_path / "blocked" / "radar.log")
    try:
        assert handler is not None
        assert Path(handler.baseFilename) == tmp_path / "radar.log"
        assert len(notes) == 2
        assert "Cannot write log file" in notes[0]
    finally:
        handler.close()


def test_configure_logging_writes_to_file_and_reports_level(tmp_path, restore_root_logging):
    log_file = tmp_path / "logs" / "radar.log"

    logger = configure_logging("radar-log-test", level="debug", log_file=log_file, include_stream=False)
    logger.debug("rendered %s frames", 6)
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert logger.level == logging.DEBUG
    assert " - DEBUG - rendered 6 frames" in log_file.read_text(encoding="utf-8")
