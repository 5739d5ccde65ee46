"""Logging configuration and utilities."""

import functools
import logging
import logging.handlers
import sys
import time
from pathlib import Path
from typing import Optional

import structlog
import colorlog
from structlog.typing import Processor

from ..config.settings import get_settings


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None
) -> None:
    """Set up structlog on top of the standard library logging tree."""
    settings = get_settings()

    level = (log_level or settings.logging.level).upper()
    format_type = log_format or settings.logging.format
    file_path = log_file if log_file is not None else settings.logging.file_path

    root = logging.getLogger()
    root.setLevel(getattr(logging, level))

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Handlers are replaced, not stacked, when setup_logging runs twice
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if file_path:
        setup_file_logging(file_path, level)

    setup_console_logging(level)

    # SDK chatter
    for noisy in ("botocore", "boto3", "s3transfer", "urllib3", "googleapiclient.discovery_cache"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def setup_file_logging(file_path: str, level: str) -> None:
    """Set up file logging with rotation."""
    log_file = Path(file_path)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        file_path,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setLevel(getattr(logging, level))

    # structlog already rendered the event; keep the line as-is
    file_handler.setFormatter(logging.Formatter("%(message)s"))

    logging.getLogger().addHandler(file_handler)


def setup_console_logging(level: str) -> None:
    """Set up colored console logging."""
    console_handler = colorlog.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, level))

    console_formatter = colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        reset=True,
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'red,bg_white',
        }
    )
    console_handler.setFormatter(console_formatter)

    logging.getLogger().addHandler(console_handler)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_execution_time(func):
    """Decorator to log function execution time at debug level."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = get_logger(func.__module__)
        start_time = time.time()

        try:
            result = func(*args, **kwargs)
            logger.debug(
                "Function executed",
                function=func.__qualname__,
                execution_time=f"{time.time() - start_time:.4f}s"
            )
            return result
        except Exception as e:
            logger.warning(
                "Function execution failed",
                function=func.__qualname__,
                execution_time=f"{time.time() - start_time:.4f}s",
                error=str(e)
            )
            raise

    return wrapper


def log_async_execution_time(func):
    """Decorator to log async function execution time."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        logger = get_logger(func.__module__)
        start_time = time.time()

        try:
            result = await func(*args, **kwargs)
            logger.info(
                "Async function executed",
                function=func.__qualname__,
                execution_time=f"{time.time() - start_time:.4f}s"
            )
            return result
        except Exception as e:
            logger.error(
                "Async function execution failed",
                function=func.__qualname__,
                execution_time=f"{time.time() - start_time:.4f}s",
                error=str(e)
            )
            raise

    return wrapper
