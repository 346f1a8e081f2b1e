# apps/common/log.py
from __future__ import annotations

import logging
import os
import sys

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H-%M-%S"

_configured = False


def setup_logging(level: str | None = None) -> None:
    """
    Configure the root logger once per process.
    Level resolution: argument -> MOD_LOG_LEVEL env var -> INFO.
    """
    global _configured
    if _configured:
        return

    lvl = (level or os.getenv("MOD_LOG_LEVEL") or "INFO").upper()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    root = logging.getLogger()
    root.setLevel(lvl)
    root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
