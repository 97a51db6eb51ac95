"""
Logging configuration for notesync.

Call ``configure_logging()`` once at startup. Library modules only ever do
``from loguru import logger``; sinks are owned by the host application.
"""

import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

from .config import get_setting, get_log_file_path


def configure_logging(
    level: Optional[str] = None,
    log_file: Optional[Union[str, Path]] = None,
    console: Optional[bool] = None,
) -> None:
    """
    Configure loguru sinks.

    Args:
        level: Minimum level; defaults to [logging].log_level
        log_file: File sink path; defaults to the configured log file
        console: Whether to also log to stderr; defaults to [logging].console
    """
    level = level or get_setting("logging", "log_level", "INFO")
    if console is None:
        console = bool(get_setting("logging", "console", True))
    sink_path = Path(log_file) if log_file else get_log_file_path()

    logger.remove()  # Remove default handler
    sink_path.parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        sink=str(sink_path),
        level=level,
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
    )

    if console:
        logger.add(sink=sys.stderr, level=level, colorize=True)

    logger.info(f"notesync logging configured: level={level}, file={sink_path}")
