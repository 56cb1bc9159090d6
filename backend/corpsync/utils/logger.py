"""
Logging setup

Structured logging through loguru.
"""
import os
import sys
from loguru import logger
from typing import Optional


def setup_logger(
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    rotation: str = '10 MB',
    retention: str = '7 days'
) -> None:
    """
    Configure the loguru sinks.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path
        rotation: Rotate the file at this size
        retention: Keep rotated files this long
    """
    logger.remove()

    # LOG_LEVEL in the environment wins over the configured level
    level = os.environ.get('LOG_LEVEL', log_level).upper()

    console_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )

    logger.configure(extra={'name': 'corpsync'})

    logger.add(
        sys.stderr,
        format=console_format,
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=True,
    )

    if log_file:
        file_format = (
            "{time:YYYY-MM-DD HH:mm:ss} | "
            "{level: <8} | "
            "{extra[name]}:{function}:{line} | "
            "{message}"
        )
        logger.add(
            log_file,
            format=file_format,
            level=level,
            rotation=rotation,
            retention=retention,
            compression='zip',
            encoding='utf-8',
        )

    logger.bind(name='logger').debug(f"Sinks configured (level {level}, file {log_file or '-'})")


def get_logger(name: str = None):
    """
    Get a logger bound to a component name.

    Args:
        name: Component name shown in the log line

    Returns:
        loguru logger
    """
    if name:
        return logger.bind(name=name)
    return logger


def log_sync_event(process_id: str, event: str, details: dict = None):
    """Log a run lifecycle event (started/completed/failed) of a sync process."""
    fields = ', '.join(f"{key}={value}" for key, value in (details or {}).items())
    msg = f"[{process_id}] {event}" + (f" ({fields})" if fields else '')
    level = 'WARNING' if event == 'failed' else 'INFO'
    logger.bind(name='sync', process_id=process_id).log(level, msg)
