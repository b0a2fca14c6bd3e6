from __future__ import annotations

import logging

from freightops.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    if _configured:
        return
    logging.basicConfig(level=(level or settings.log_level), format=LOG_FORMAT)
    _configured = True
