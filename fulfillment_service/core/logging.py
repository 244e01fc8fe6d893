import logging
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

from fulfillment_service.core.config import settings

# Client libraries that log every frame or request at INFO.
QUIET_LOGGERS = ("aio_pika", "aiormq", "httpx", "httpcore")


def setup_logging(level: Optional[str] = None) -> None:
    root = logging.getLogger()
    root.setLevel(level or settings.log_level)

    if any(isinstance(handler.formatter, jsonlogger.JsonFormatter) for handler in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        static_fields={"service": settings.service_name}
    ))
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
