"""
Structured logging configuration.

Development and tests log one readable line per record; production emits JSON.
Request timing and the merge coordinator attach scenario ids through
``extra=``, and both formatters carry them.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Fields passed via ``extra=`` by planner.middleware.timing and merge logging
CONTEXT_KEYS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "scenario_id",
    "target_scenario_id",
    "merge_strategy",
)


def _context(record: logging.LogRecord) -> dict:
    out = {}
    for key in CONTEXT_KEYS:
        val = getattr(record, key, None)
        if val is not None:
            out[key] = val
    return out


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message [s3→s1 favor_source] [12ms]``"""

    def format(self, record: logging.LogRecord) -> str:
        ctx = _context(record)
        line = (
            f"{datetime.now().strftime('%H:%M:%S')} {record.levelname:<8} "
            f"{record.name}: {record.getMessage()}"
        )
        if "target_scenario_id" in ctx:
            line += f" [s{ctx.get('scenario_id')}→s{ctx['target_scenario_id']}"
            line += f" {ctx['merge_strategy']}]" if "merge_strategy" in ctx else "]"
        if "duration_ms" in ctx:
            line += f" [{ctx['duration_ms']:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    LOG_LEVEL overrides the default (INFO in production, DEBUG otherwise).
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app runs once per test app; keep exactly one handler
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
