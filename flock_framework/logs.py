"""
Flock Coordination Framework - Logging

Console logging for every process in the flock, with an optional
JSON-lines format for log shippers, plus a structured audit helper.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from .config import log_config

ROOT_LOGGER = "flock"

logger = logging.getLogger(f"{ROOT_LOGGER}.audit")


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> logging.Logger:
    """Install the console handler on the ``flock`` logger tree.

    Safe to call more than once; the previous handler is replaced.
    """
    level = (level or log_config.level).upper()
    fmt = fmt or log_config.format

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    # stdout is reserved for the MCP stdio transport
    console_handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console_handler.setFormatter(JsonLineFormatter())
    else:
        console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s'))
    root.addHandler(console_handler)
    return root


def log_action(action: str, **kwargs):
    """Log an action with structured JSON format."""
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        **kwargs
    }
    logger.info(json.dumps(log_entry, default=str))
