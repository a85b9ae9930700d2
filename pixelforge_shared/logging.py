from __future__ import annotations

import logging
import os

# httpx and httpcore log every request at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore")


def configure_logging(default_level: str = "INFO") -> None:
    level_name = os.getenv("FORGE_LOG_LEVEL", default_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
