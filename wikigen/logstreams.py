"""Structured JSON logging.

Log calls pass their context as a single dict argument, eg

    logit.error("cannot save bundle", {"folder": "/tmp/foo"})

and the formatter emits it as the `data` field of a JSON line.

"""

import json
import logging
import sys

# All modules log via these loggers.
LOGGER_NAMES = ("app",)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data = record.args if isinstance(record.args, dict) else {}
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.msg if data else record.getMessage(),
            "data": data,
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup(level: str) -> logging.Handler:
    """Route all application loggers to stdout with JSON formatting."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.addHandler(handler)
        logger.setLevel(level.upper())
    return handler
