"""
Logging setup for the engine.

Components log through ``from loguru import logger``; entry points call
setup_logging() once with the LoggingConfig from KGRagConfig.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import LoggingConfig

_HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"
)


def setup_logging(config: Optional[LoggingConfig] = None):
    """
    Configure the loguru sinks.

    Args:
        config: Logging settings; read from the environment when None.

    Returns:
        The configured loguru logger.
    """
    config = config or LoggingConfig()
    level = config.level.upper()
    logger.remove()

    if config.format.lower() == "json":
        # Structured JSON on stdout for containers.
        logger.add(
            sys.stdout,
            level=level,
            format="{message}",
            serialize=True,
            backtrace=True,
            diagnose=False,
        )
    else:
        logger.add(sys.stderr, level=level, format=_HUMAN_FORMAT, colorize=True)

    if config.enable_file_logging:
        log_path = Path(config.log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path / "kg_rag_{time:YYYY-MM-DD}.log",
            rotation="10 MB",
            retention="30 days",
            level=level,
            format=_FILE_FORMAT,
            backtrace=True,
            diagnose=False,
        )

    logger.debug(
        "Logging configured (level={}, format={}, file_logging={})",
        level,
        config.format,
        config.enable_file_logging,
    )
    return logger
