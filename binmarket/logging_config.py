"""Logging setup. Module loggers everywhere, configured once at entry."""

import logging
import os
import sys


LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s - %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure the binmarket logger tree: level, format, stderr handler."""
    root = logging.getLogger("binmarket")
    root.setLevel((level or LOG_LEVEL).upper())
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT,
                                               datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
