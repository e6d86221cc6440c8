from __future__ import annotations

import logging
import sys

from tenantsync.core.config import get_settings


_HANDLER_NAME = "tenantsync"
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger; repeated calls only adjust the level.
    root = logging.getLogger()
    resolved = (level or get_settings().log_level).upper()
    root.setLevel(resolved)
    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    # Keep httpx request lines out of job logs unless debugging.
    if resolved != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)
