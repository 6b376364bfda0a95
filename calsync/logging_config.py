# calsync/logging_config.py
import logging
import sys
from typing import Optional

from calsync.config import get_settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """
    Attach a single stdout handler to the `calsync` logger tree.

    Modules log through `logging.getLogger(__name__)`; calling this twice
    only adjusts the level.
    """
    global _configured

    level = (level or get_settings().LOG_LEVEL).upper()
    root = logging.getLogger("calsync")
    root.setLevel(level)

    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)
    _configured = True
