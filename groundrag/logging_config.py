"""Structured logging setup shared by the app and the scripts."""
import logging

import structlog

from groundrag import config


def configure_logging(level: str = None) -> None:
    """Route structlog through stdlib logging as JSON lines."""
    logging.basicConfig(format="%(message)s", level=(level or config.LOG_LEVEL).upper())

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
