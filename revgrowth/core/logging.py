from __future__ import annotations

import logging

from revgrowth.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Install a single root handler so repeated app factory calls do not duplicate output.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(handler, "_revgrowth_handler", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._revgrowth_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # SQLAlchemy echoes are noisy at INFO; keep them opt-in.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
