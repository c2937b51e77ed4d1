"""Structured logging for qnews: structlog on top of stdlib logging."""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", log_format: str = "") -> None:
    """Route structlog through stdlib logging at ``level``.

    Context bound with ``structlog.contextvars`` (the crawl tick's sample
    time, for instance) is merged into every event logged inside it.
    """
    if level == "WARN":
        level = "WARNING"
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
        force=True,
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if _is_json_mode(log_format)
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _is_json_mode(log_format: str = "") -> bool:
    if log_format:
        return log_format.upper() == "JSON"
    return not sys.stdout.isatty()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
