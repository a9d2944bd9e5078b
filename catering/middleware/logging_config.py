"""
Logging setup for the catering service.

One stderr handler on the root logger. Production writes one JSON object
per line; development and tests get a short coloured line that shows the
quote / invoice / change request a record belongs to.
"""

import json
import logging
import sys
from datetime import datetime, timezone

_REQUEST_FIELDS = ("request_id", "method", "path", "status", "duration_ms", "remote_addr")

# record attribute -> short label in readable output
_ENTITY_FIELDS = {
    "change_request_id": "cr",
    "invoice_id": "inv",
    "quote_id": "quote",
    "saga_step": "step",
}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for key in (*_REQUEST_FIELDS, *_ENTITY_FIELDS):
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        context = " ".join(
            f"{label}={getattr(record, attr)}"
            for attr, label in _ENTITY_FIELDS.items()
            if getattr(record, attr, None) is not None
        )
        line = f"{color}{ts} {record.levelname:<7}{self.RESET} {record.name}"
        if context:
            line += f" [{context}]"
        line += f" {record.getMessage()}"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install the stderr handler for ``app``.

    ``LOG_LEVEL`` in the app config wins; otherwise INFO in production and
    DEBUG elsewhere. Calling it again replaces the handler, so building
    several apps in one process does not duplicate output.
    """
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = (app.config.get("LOG_LEVEL") or ("INFO" if production else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # per-request and per-statement chatter
    for name in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not testing:
        app.logger.info("Logging at %s (%s)", level_name, "json" if production else "readable")
