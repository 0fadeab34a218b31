"""Logging configuration built around structlog."""

from __future__ import annotations

import logging
import logging.config

import structlog

_LOGGING_INITIALISED = False


def configure_logging(level: str = "INFO", json_logs: bool = False) -> structlog.stdlib.BoundLogger:
    """Configure structlog + stdlib handlers and return the application logger.

    Safe to call more than once; only the first call installs handlers.
    """
    global _LOGGING_INITIALISED

    if not _LOGGING_INITIALISED:
        shared_processors = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
        ]
        renderer = (
            structlog.processors.JSONRenderer()
            if json_logs
            else structlog.dev.ConsoleRenderer(colors=False)
        )

        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "structured": {
                        "()": structlog.stdlib.ProcessorFormatter,
                        "foreign_pre_chain": shared_processors,
                        "processors": [
                            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                            structlog.processors.format_exc_info,
                            renderer,
                        ],
                    }
                },
                "handlers": {
                    "console": {
                        "class": "logging.StreamHandler",
                        "level": level.upper(),
                        "formatter": "structured",
                    },
                },
                "root": {"handlers": ["console"], "level": level.upper()},
                "loggers": {
                    # APScheduler is chatty at INFO on every tick
                    "apscheduler": {"level": "WARNING"},
                    "httpx": {"level": "WARNING"},
                },
            }
        )

        structlog.configure(
            processors=shared_processors
            + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True

    return structlog.get_logger("dealintake")


__all__ = ["configure_logging"]
