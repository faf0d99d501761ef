import logging
import sys
from typing import Optional

import structlog


def init_logging(level: str = "INFO", json_output: bool = True, stream=None) -> None:
    """Configure stdlib logging and structlog once for the process.

    structlog events are handed to stdlib logging, so stdout stays free for
    command output.
    """
    level = (level or "INFO").upper()
    logging.basicConfig(level=level, stream=stream or sys.stderr, format="%(message)s")
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def init_from_settings(settings, stream: Optional[object] = None) -> None:
    init_logging(settings.LOG_LEVEL, settings.LOG_JSON, stream=stream)
