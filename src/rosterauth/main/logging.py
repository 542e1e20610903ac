import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from rich.logging import RichHandler

from rosterauth.main.config import get_loglevel
from rosterauth.main.request_context import get_request_context

JSON_LOGS_ENABLED = os.getenv("JSON_LOGS", "true").lower() in {"1", "true", "yes", "on"}

# Anything a bare record already carries is not an ``extra`` field
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """The non-empty fields passed with ``extra={...}``."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_") and value is not None
    }


class SignInJSONFormatter(logging.Formatter):
    """One JSON object per line: the message, the bound sign-in context, then extras.

    Context bound by the request wins over an ``extra`` of the same name.
    """

    def format(self, record: logging.LogRecord) -> str:
        log: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            **get_request_context(),
        }
        for key, value in record_extras(record).items():
            log.setdefault(key, value)

        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)

        return json.dumps(log, default=str)


# Third-party loggers only speak up when we are debugging
for _logger in logging.root.manager.loggerDict:
    logging.getLogger(_logger).setLevel(
        logging.INFO if get_loglevel() <= logging.DEBUG else logging.CRITICAL
    )


class SimpleLogger(logging.Logger):
    def __init__(self, name="main", level=logging.WARNING):
        logging.Logger.__init__(self, name, level)

        if JSON_LOGS_ENABLED:
            handler = logging.StreamHandler(stream=sys.stdout)
            handler.setFormatter(SignInJSONFormatter())
        else:
            handler = RichHandler(rich_tracebacks=True, markup=True, show_path=True)
        handler.setLevel(level)
        self.addHandler(handler)


def get_logger(module_name: str):
    # If we don't add a handler manually one will be created for us
    return SimpleLogger(name=module_name, level=get_loglevel())
