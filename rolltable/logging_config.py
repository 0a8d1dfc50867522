"""Logging configuration for rolltable"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import EngineConfig


ROOT_LOGGER = "rolltable"


class JsonFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable single line format"""

    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)-8s] %(name)s: %(message)s")


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the rolltable hierarchy"""
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(level: Optional[str] = None, fmt: str = "text",
                  stream: Optional[Any] = None) -> logging.Logger:
    """Configure the rolltable root logger

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR). Defaults to
            EngineConfig().log_level, i.e. ROLLTABLE_LOG_LEVEL when set.
        fmt: "text" or "json".
        stream: Output stream, stderr when omitted.
    """
    level = level or EngineConfig().log_level
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.WARNING))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if fmt == "json" else TextFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger
