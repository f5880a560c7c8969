"""cropvault: crop storage inventory and billing ledger.

Importing the package sets up the shared ``log`` used by every layer. Records
go to a rotating file under ``.logs/`` at the project root and, from
``WARNING`` upwards, to stderr. ``CROPVAULT_LOG_DIR`` and
``CROPVAULT_LOG_LEVEL`` override the directory and the file level.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("CROPVAULT_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "cropvault.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _file_level() -> int:
    name = os.environ.get("CROPVAULT_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(log_file: Path = LOG_FILE, *, file_level: int | None = None) -> logging.Logger:
    """Attach the file and console handlers to the ``cropvault`` logger once.

    An unwritable log directory is reported on stderr and the logger keeps
    only its console handler, so the ledger still runs on read-only media.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _file_level() if file_level is None else file_level
    logger.setLevel(min(level, logging.WARNING))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        ledger_handler = RotatingFileHandler(log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: ledger log disabled, cannot write '{log_file}': {exc}", file=sys.stderr)
    else:
        ledger_handler.setLevel(level)
        ledger_handler.setFormatter(formatter)
        logger.addHandler(ledger_handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.WARNING)
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger


log = configure_logging()
log.debug("cropvault %s logging to '%s'", __version__, LOG_FILE)

__all__ = ["__version__", "configure_logging", "log"]
