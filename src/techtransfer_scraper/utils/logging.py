"""
Centralized logging configuration and utilities.

Provides structured logging with JSON format support and configurable output
destinations. The scraping core logs key-value events only; alerting on top
of these events is left to the observability stack.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.stdlib import LoggerFactory

from ..config import LoggingConfig


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    config: Optional[LoggingConfig] = None,
) -> structlog.stdlib.BoundLogger:
    """
    Set up structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file. If None, logs to console only.
        log_format: Log format ('json' or 'text')
        config: Logging section of the loaded configuration, used for any
            argument left as None.
    """
    config = config or LoggingConfig()

    log_level = (level or config.level).upper()
    log_format = log_format or config.format
    log_file = log_file or config.file

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level),
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        file_handler.setLevel(getattr(logging, log_level))
        logging.getLogger().addHandler(file_handler)

    return structlog.get_logger("root")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)


def log_scraping_activity(
    institution_key: str,
    url: str,
    engine: str,
    status_code: Optional[int],
    response_time_ms: float,
    success: bool,
    error_message: Optional[str] = None,
) -> None:
    """
    Log a single fetch for audit and monitoring.

    Args:
        institution_key: Source the URL belongs to
        url: URL that was fetched
        engine: Fetch engine used
        status_code: HTTP status code, if any
        response_time_ms: Response time in milliseconds
        success: Whether the fetch was successful
        error_message: Error message if the fetch failed
    """
    logger = get_logger(__name__)

    log_data = {
        "institution_key": institution_key,
        "url": url,
        "engine": engine,
        "status_code": status_code,
        "response_time_ms": round(response_time_ms, 2),
        "success": success,
    }

    if error_message:
        log_data["error_message"] = error_message

    if success:
        logger.info("Fetch successful", **log_data)
    else:
        logger.warning("Fetch failed", **log_data)


def log_rate_limit_decision(institution_key: str, granted: bool, **details: Any) -> None:
    """Log a rate-limit acquisition outcome."""
    logger = get_logger(__name__)
    if granted:
        logger.debug("Rate limit permit granted", institution_key=institution_key, **details)
    else:
        logger.info("Rate limit permit denied", institution_key=institution_key, **details)
