"""
Logging setup for the process map test engine.

Two output formats:
    readable   coloured single line, with run/execution context appended
    json       one JSON object per line for log shipping

The format follows the environment (readable in debug/testing, json
otherwise) unless LOG_FORMAT overrides it. LOG_LEVEL sets the level.

Services attach context through ``extra=``::

    logger.info("Test run %s finished", run_id,
                extra={"run_id": run_id, "process_map_id": pm.id})
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Context keys services and the timing middleware pass via ``extra=``
CONTEXT_FIELDS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "org_id",
    "process_map_id",
    "run_id",
    "execution_id",
)

# Short labels for the readable format
_SHORT = {
    "request_id": "req",
    "process_map_id": "pm",
    "run_id": "run",
    "execution_id": "exec",
    "org_id": "org",
}


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured console output for development."""

    LEVEL_COLOURS = {
        "DEBUG": "\033[2;37m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelname, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        tags = " ".join(
            f"{_SHORT[key]}={value}"
            for key, value in _context(record).items()
            if key in _SHORT
        )
        line = f"{clock} {colour}{record.levelname[:4]}{self.RESET} {record.name} {record.getMessage()}"
        if tags:
            line = f"{line}  [{tags}]"
        if record.exc_info and record.exc_info[0] is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    Called first in create_app() so extension set-up is logged too.
    """
    testing = app.config.get("TESTING", False)
    debug = app.config.get("DEBUG", False)

    fmt = os.getenv("LOG_FORMAT", "readable" if (debug or testing) else "json").lower()
    default_level = "WARNING" if testing else ("DEBUG" if debug else "INFO")
    level_name = os.getenv("LOG_LEVEL", default_level).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())

    root = logging.getLogger()
    # create_app() runs more than once per process under pytest
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # Per-statement SQL and per-request werkzeug lines drown out run logs
    for name in ("sqlalchemy.engine", "werkzeug", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    app.logger.debug("Logging configured level=%s format=%s", level_name, fmt)
