"""
Logging configuration.

stratus logs structured key/value events through structlog on top of the
standard library logging module. Libraries only call
``structlog.get_logger(__name__)``; applications (the CLI) call
``configure_logging`` once.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json_output: bool = False, app_name: str | None = None) -> None:
    """
    Configure structured logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        json_output: Render one JSON object per line instead of console output
        app_name: Added to every event as ``app`` when given
    """
    log_level = getattr(logging, level.upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level}")

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
        force=True,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if app_name:
        processors.append(_add_app_name(app_name))
    processors.append(
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def _add_app_name(app_name: str):
    """Processor to add the app name to all events."""

    def processor(logger, method_name, event_dict):
        event_dict["app"] = app_name
        return event_dict

    return processor
