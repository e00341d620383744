"""Loguru sink configuration."""

import sys
from pathlib import Path

from loguru import logger

from concord.core.config import Settings, get_settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(settings: Settings | None = None, console: bool = True) -> None:
    """Configure loguru based on settings.

    Installs a daily-rotated file sink under ``concord_log_dir`` and,
    optionally, a colorized stderr sink.
    """
    settings = settings or get_settings()
    logger.remove()  # Remove default handler

    logs_dir = Path(settings.concord_log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    level = "DEBUG" if settings.concord_debug else settings.concord_log_level

    logger.add(
        str(logs_dir / "concord_{time:YYYY-MM-DD}.log"),
        rotation="1 day",
        retention="7 days",
        level=level,
        format=LOG_FORMAT,
    )

    if console:
        logger.add(
            sys.stderr,
            level=level,
            format=LOG_FORMAT,
            colorize=True,
        )
