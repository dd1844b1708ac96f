"""Logging setup for the Vitrine API process.

The api layer logs through stdlib ``logging`` (``vitrine.*`` loggers); billing and
scheduler code logs through loguru.  Both end up in the same console and rotating
file: loguru records are handed to stdlib under the emitting module's name.
"""

import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from loguru import logger as loguru_logger

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = Path(os.getenv("LOG_DIR", "logs"))
LOG_FILE = os.getenv("LOG_FILE", "vitrine.log")

_QUIET = ("uvicorn.access", "sqlalchemy.engine", "apscheduler", "stripe")
_configured = False


class _PropagateHandler(logging.Handler):
    def emit(self, record: logging.LogRecord):
        logging.getLogger(record.name).handle(record)


def setup_logging(level: str | None = None):
    """Attach console + file handlers once and route loguru into them."""
    global _configured
    if _configured:
        return
    level_no = getattr(logging, (level or LOG_LEVEL), logging.INFO)

    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger()
    root.setLevel(level_no)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    root.addHandler(console)

    LOG_DIR.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        LOG_DIR / LOG_FILE,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)

    # billing.* / scheduler.* records keep their module name on the way through
    loguru_logger.remove()
    loguru_logger.add(_PropagateHandler(), level=level_no, format="{message}")

    _configured = True
    logging.getLogger("vitrine.api").debug("Logging configured (level=%s, file=%s)", LOG_LEVEL, LOG_DIR / LOG_FILE)
