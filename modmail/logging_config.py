"""Modmail logging configuration.

Modmail uses the shared InstruktAI logging standard (`instrukt_ai_logging`).
Logs go to the canonical location for the `modmail` app name; the level is
read from `MODMAIL_LOG_LEVEL`.
"""

from __future__ import annotations

import os
from typing import Optional

from instrukt_ai_logging import configure_logging


def setup_logging(level: Optional[str] = None) -> None:
    """Configure modmail logging.

    Args:
        level: Optional override for `MODMAIL_LOG_LEVEL`.
    """
    if level:
        os.environ["MODMAIL_LOG_LEVEL"] = level.upper()

    configure_logging("modmail")
