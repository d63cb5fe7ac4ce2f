"""
Logging setup for processes embedding the orchestrator.

Library modules only ever call ``logging.getLogger(__name__)``; the host
process decides handlers and levels by calling ``configure_logging`` once.
"""

import logging
from typing import Optional

from .config import Settings, get_settings


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Apply the configured log level with the standard log format."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # The kubernetes client logs every request at DEBUG through urllib3
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
