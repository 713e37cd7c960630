from __future__ import annotations

import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional


def _project_root() -> Path:
    # edge_agent/utils/logging_setup.py -> edge_agent/utils -> edge_agent -> repo root
    return Path(__file__).resolve().parents[2]


def configure_level(level_name: str) -> int:
    """Resolve a level name and apply it to the package logger."""
    level = getattr(logging, str(level_name or "INFO").upper(), logging.INFO)
    logging.getLogger("edge_agent").setLevel(level)
    return level


def setup_file_logging(
    *,
    log_file_path: str,
    level: int,
    logger_names: Optional[list[str]] = None,
) -> None:
    """
    Attach a daily rotating file handler to loggers. Idempotent across reloads.
    `log_file_path` may be relative to the project root.
    """
    if not log_file_path:
        return

    path = Path(log_file_path)
    if not path.is_absolute():
        path = _project_root() / path

    os.makedirs(path.parent, exist_ok=True)

    handler_name = "edge_agent_file_handler"
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    def _ensure(logger: logging.Logger) -> None:
        for h in logger.handlers:
            if getattr(h, "name", None) == handler_name:
                return

        h = TimedRotatingFileHandler(
            filename=str(path),
            when="midnight",
            interval=1,
            backupCount=7,
            encoding="utf-8",
        )
        h.setLevel(level)
        h.setFormatter(fmt)
        h.name = handler_name
        logger.addHandler(h)
        if logger.level == logging.NOTSET or logger.level > level:
            logger.setLevel(level)
        # Once this logger has its own handler, root would duplicate every line.
        if logger.name:
            logger.propagate = False

    targets = logger_names or ["", "uvicorn.error", "edge_agent"]
    for name in targets:
        _ensure(logging.getLogger(name))


def silence_noisy_loggers() -> None:
    """httpx logs every origin fetch and event POST at INFO, including full URLs."""
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
