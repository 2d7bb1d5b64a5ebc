from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .paths import resolve_log_path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_HANDLER_TAG = "_cert_registry_handler"


def configure_logging(
    level: int | str = logging.INFO,
    log_file: Optional[Path | str] = None,
    *,
    to_file: bool = True,
) -> logging.Logger:
    """Attach a stderr handler and (unless disabled) a file handler to the package logger.

    Safe to call repeatedly; handlers installed by an earlier call are replaced.
    """
    logger = logging.getLogger("cert_registry")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if to_file:
        path = Path(log_file) if log_file else resolve_log_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_TAG, True)
        logger.addHandler(handler)
    logging.captureWarnings(True)
    return logger


__all__ = ["LOG_FORMAT", "configure_logging"]
