"""JSON structured logging configuration."""
from __future__ import annotations

import logging
import sys

from pythonjsonlogger.json import JsonFormatter


def setup_logging(level: int | str = logging.INFO) -> logging.Handler:
    """Route the `foliocas` loggers to stdout as one JSON object per line."""
    handler = logging.StreamHandler(sys.stdout)

    formatter = JsonFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={
            "asctime": "timestamp",
            "levelname": "level",
            "name": "logger",
        },
    )
    handler.setFormatter(formatter)

    logger = logging.getLogger("foliocas")
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(level)

    # anyio worker threads are chatty at DEBUG
    logging.getLogger("anyio").setLevel(logging.WARNING)
    return handler
