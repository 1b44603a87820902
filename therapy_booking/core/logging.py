import logging
import sys

import structlog
from pythonjsonlogger import jsonlogger

from ..config import get_settings


def setup_logging(level: str = None, json_logs: bool = None):
    """Structured logging setup for the booking core"""
    settings = get_settings()
    level = (level or settings.log_level).upper()
    json_logs = settings.json_logs if json_logs is None else json_logs

    # JSON formatter for production
    json_formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
    )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Setup root logger
    logger = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(json_formatter)
    else:
        handler.setFormatter(logging.Formatter("%(levelname)-8s %(name)s: %(message)s"))
    logger.handlers = [handler]
    logger.setLevel(level)

    return structlog.get_logger("therapy_booking")
