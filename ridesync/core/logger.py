"""Logger configuration for RideSync.

Every record carries a ``service`` extra so lines from the API process and
the backfill sweep can be told apart once shipped to a shared sink.
Ingestion messages keep their ``[TAG]`` prefix (``[TOKEN]``, ``[BACKFILL]``,
``[RIDE_WRITER]`` ...) inside the message itself.
"""

import sys
from pathlib import Path

from loguru import logger

from ridesync.config.settings import settings

SERVICE_NAME = "ridesync"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[service]}</magenta> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[service]} | {name}:{function}:{line} - {message}"


def setup_logger(level: str | None = None, log_file: str | None = None) -> None:
    """Configure loguru from RideSync settings.

    Args:
        level: Overrides LOG_LEVEL when given
        log_file: Overrides LOG_FILE when given; an empty value means
            console only. Rotation and retention come from LOG_ROTATION
            and LOG_RETENTION.
    """
    level = level or settings.log_level
    log_file = settings.log_file if log_file is None else log_file

    logger.remove()
    logger.configure(extra={"service": SERVICE_NAME})

    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Tracebacks go to the file without local variable values; they may hold tokens
        logger.add(
            log_path,
            format=FILE_FORMAT,
            level=level,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            compression="zip",
            backtrace=True,
            diagnose=False,
        )

    logger.info(f"Logger initialized: level={level}, file={log_file or 'none'}")
