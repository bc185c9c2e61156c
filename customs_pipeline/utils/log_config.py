"""Logging setup shared by the API process and scripts."""
import logging
from typing import Optional

from .config import Settings, get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure the root logger once, using LOG_LEVEL from settings."""
    settings = settings or get_settings()
    level = logging.DEBUG if settings.DEBUG else settings.LOG_LEVEL.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # httpx logs every request line at INFO, including full URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncssh").setLevel(logging.WARNING)
