"""
Logging helpers shared by the relay, the client and the scripts.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

# aiortc and aioice log every STUN transaction at INFO.
NOISY_LOGGERS = ("aioice", "aiortc")


def configure_logging(
    level: Union[int, str] = logging.INFO, format: Optional[str] = None
) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
