"""
Structured JSON logging for the rate history tooling.

Every line is one JSON object. Modules log through their own
`logging.getLogger(__name__)` and attach context with `extra=`; only the
keys in FIELDS are copied onto the line.
"""

import json
import logging
import sys
from datetime import datetime, timezone

FIELDS = ("run_id", "lender", "pipeline", "step", "url", "snapshot", "error_code")


class JsonFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class DefaultsFilter(logging.Filter):
    """Fill in run-wide fields a record did not set itself."""

    def __init__(self, **defaults):
        super().__init__()
        self.defaults = defaults

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.defaults.items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


def setup(level=logging.INFO, **defaults) -> logging.Logger:
    """
    Route all logging to stdout as JSON lines.

        log = setup(pipeline="historical", run_id="2024-03-01")
        log.info("snapshot fetched", extra={"lender": "ptsb", "snapshot": ts})

    `defaults` apply to every record, including those from library loggers.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(DefaultsFilter(**defaults))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # aiohttp's access/client chatter is noise at INFO
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))

    return logging.getLogger("ratehistory")
