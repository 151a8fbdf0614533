from __future__ import annotations

import logging
from pathlib import Path

import pytest

from capacity_engine.common.logging_config import configure_logging, resolve_level


def test_resolve_level() -> None:
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(logging.WARNING) == logging.WARNING
    with pytest.raises(ValueError):
        resolve_level("chatty")


def test_log_dir_receives_engine_log(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging("INFO", log_dir=str(tmp_path / "logs"))
        logging.getLogger("capacity_engine.test").info("forecast done")
        for h in root.handlers:
            h.flush()

        text = (tmp_path / "logs" / "engine.log").read_text(encoding="utf-8")
        assert "| INFO | capacity_engine.test | forecast done" in text
    finally:
        for h in root.handlers:
            h.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
