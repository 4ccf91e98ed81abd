"""
structlog configuration for the gateway, API and CLI processes.

Every record carries the ISO timestamp, level and logger name, plus any
``request_id`` / ``user_id`` bound through ``structlog.contextvars``. Broker
secrets are masked right before rendering.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

import structlog

from alphaforge.monitoring.redaction import structlog_redaction_processor

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def _processor_chain(log_format: str) -> List:
    chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        # must stay after format_exc_info so tracebacks are scrubbed too
        structlog_redaction_processor,
    ]
    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    chain.append(renderer)
    return chain


def _attach_rotating_file(path: Path, level: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.getLogger().addHandler(handler)


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: Optional[str] = None) -> None:
    """
    Configure stdlib logging and structlog for the process.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: "json" for machine-readable output, anything else for the console renderer
        log_file: Optional rotating log file in addition to stdout
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    structlog.configure(
        processors=_processor_chain(log_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        _attach_rotating_file(Path(log_file), level)

    get_logger(__name__).info("Logging configured", log_level=log_level, log_format=log_format, log_file=log_file)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
