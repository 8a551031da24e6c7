import sys
from typing import Optional

from loguru import logger


CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink with a console sink and an optional daily file."""
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level.upper())
    if log_file:
        logger.add(log_file, rotation="1 day", retention="30 days", level="DEBUG")
