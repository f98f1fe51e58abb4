"""Logging setup: JSON lines outside dev, readable lines in dev."""

import json
import logging
import sys
from datetime import datetime, timezone

_HANDLER_NAME = "entitlements"


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event_type = getattr(record, "event_type", None)
        if event_type:
            payload["event_type"] = event_type
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = f"{_format_timestamp(record)} {record.levelname} [{record.name}] {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "prod", level: str = "INFO", json_logs: bool = True) -> None:
    """Install a single stdout handler on the ``app`` logger tree.

    Calling it again replaces the handler instead of stacking a new one.
    """
    logger = logging.getLogger("app")
    logger.setLevel(level.upper())

    formatter: logging.Formatter
    if json_logs and env != "dev":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    for existing in list(logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False
