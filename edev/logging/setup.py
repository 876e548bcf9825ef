"""
Loguru sinks for the service: colourised stdout plus a rotating file per environment.
"""

import sys
from pathlib import Path

from loguru import logger

from edev.config.settings import Settings

CONSOLE_FORMAT = (
    "<cyan>{time:YYYY/MM/DD HH:mm:ss}</cyan> | "
    "<level>{level: <8}</level> | "
    "<green>{name}</green>:<blue>{function}</blue>:<yellow>{line}</yellow> - "
    "<level>{message}</level>"
)


def log_file_path(settings: Settings) -> Path:
    return Path(settings.logs_dir) / f"edev_{settings.app_env}.log"


def setup_logging(settings: Settings) -> Path:
    """Replace the default sink; returns the path of the file sink."""
    logger.remove()
    logger.add(sys.stdout, level=settings.log_level, format=CONSOLE_FORMAT)

    path = log_file_path(settings)
    path.parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        path,
        level=settings.log_level,
        rotation="10 MB",
        retention="14 days",
        compression="zip",
        enqueue=True,
    )
    logger.debug("logging to {} (env={}, version={})", path, settings.app_env, settings.git_tag)
    return path
