from __future__ import annotations

import logging
import sys

from agentkernel.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | int | None = None) -> None:
    """Install one stream handler on the ``agentkernel`` logger."""
    logger = logging.getLogger("agentkernel")
    logger.setLevel(level or settings.LOG_LEVEL.upper())
    if not any(getattr(h, "_agentkernel", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._agentkernel = True
        logger.addHandler(handler)
