"""Logging setup for the chat service.

Plain ``[time] LEVEL in logger: message`` lines by default; one JSON object per
line when ``LOG_JSON`` is enabled.
"""

import json
import logging

from marketchat.core.config import Settings


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def init_logging(settings: Settings) -> None:
    root = logging.getLogger()
    root.setLevel(settings.LOG_LEVEL)

    handler = next((h for h in root.handlers if getattr(h, "_marketchat", False)), None)
    if handler is None:
        handler = logging.StreamHandler()
        handler._marketchat = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    handler.setFormatter(_get_formatter(settings.LOG_JSON))

    # motor/pymongo are chatty at DEBUG
    logging.getLogger("pymongo").setLevel(max(root.level, logging.INFO))
