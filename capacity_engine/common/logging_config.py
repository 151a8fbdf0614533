from __future__ import annotations

import logging
from pathlib import Path
from typing import Final


DEFAULT_LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_FILE_NAME: Final[str] = "engine.log"


def resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def configure_logging(level: int | str = logging.INFO, log_dir: str | None = None) -> None:
    """Configure standard library logging for the CLI and embedding scripts.

    Records always go to stderr. With ``log_dir`` they are also appended to
    '<log_dir>/engine.log', so batches of forecast runs leave a trail next
    to the sqlite audit database.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(Path(log_dir) / LOG_FILE_NAME, encoding="utf-8"))

    logging.basicConfig(level=resolve_level(level), format=DEFAULT_LOG_FORMAT, handlers=handlers, force=True)
