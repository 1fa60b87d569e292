import logging
import sys
import json
from typing import Any, Dict
from functools import lru_cache

from xnrt_ledger.infra.config.settings import settings

class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging"""

    # Attributes every LogRecord carries; anything else came in through `extra`
    RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name
        }

        # Add message if it's not already JSON
        try:
            if isinstance(record.msg, str) and record.msg.startswith("{"):
                log_data.update(json.loads(record.msg))
            else:
                log_data["message"] = record.getMessage()
        except (json.JSONDecodeError, AttributeError):
            log_data["message"] = record.getMessage()

        for key, value in record.__dict__.items():
            if key not in self.RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)

def _resolve_level() -> int:
    if settings.LOG_LEVEL:
        level = logging.getLevelName(settings.LOG_LEVEL.upper())
        if isinstance(level, int):
            return level
    return logging.DEBUG if settings.DEBUG else logging.INFO

class Logger:
    def __init__(self, name: str = "xnrt_ledger"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(_resolve_level())
        self.logger.propagate = True

        if not self.logger.handlers:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(JsonFormatter())
            self.logger.addHandler(console_handler)

    def _log(self, level: int, message: Any, extra: Dict[str, Any] = None, exc_info: bool = False) -> None:
        if extra is None:
            extra = {}

        if isinstance(message, dict):
            message = json.dumps(message, default=str)

        self.logger.log(level, message, extra=extra, exc_info=exc_info)

    def info(self, message: Any, extra: Dict[str, Any] = None) -> None:
        self._log(logging.INFO, message, extra)

    def error(self, message: Any, extra: Dict[str, Any] = None, exc_info: bool = False) -> None:
        self._log(logging.ERROR, message, extra, exc_info)

    def warning(self, message: Any, extra: Dict[str, Any] = None) -> None:
        self._log(logging.WARNING, message, extra)

    def debug(self, message: Any, extra: Dict[str, Any] = None) -> None:
        self._log(logging.DEBUG, message, extra)

# Global logger instance
logger = Logger()

@lru_cache()
def get_logger(name: str = None) -> Logger:
    """Get a logger instance with optional name"""
    return Logger(name) if name else logger
