"""Structured logging setup."""

import logging
import os
import sys

import structlog

_configured = False


def _is_test_environment() -> bool:
    return "pytest" in sys.modules


def configure_logging(level: str = None, fmt: str = None, force: bool = False):
    """Configure structlog on top of stdlib logging.

    Console rendering unless LOG_FORMAT=json. Only the first call (or a
    forced one) takes effect. Under pytest everything is silenced.
    """
    global _configured
    if _configured and not force:
        return structlog.get_logger()

    if _is_test_environment() and not force:
        logging.root.setLevel(logging.CRITICAL + 1)
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        _configured = True
        return structlog.get_logger()

    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    fmt = (fmt or os.environ.get("LOG_FORMAT", "console")).lower()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level, logging.INFO),
        force=force,
    )

    _configured = True
    return structlog.get_logger()
