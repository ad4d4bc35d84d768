"""
Structured logging setup.

Provides coloured console output, a plain text log file and optional JSON lines.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from lp_guardian.config.settings import Settings

# =============================================================================
# Constants
# =============================================================================

# Log tags for special message handling
LOG_TAG_EXIT_GATE = "[EXIT-GATE]"
LOG_TAG_PNL = "[PNL]"
LOG_TAG_PORTFOLIO = "[PORTFOLIO]"
LOG_TAG_COOLDOWN = "[COOLDOWN]"

# Structured fields copied into JSON lines when passed via `extra=`
JSON_EXTRA_FIELDS = ("trade_id", "entity", "category", "reason", "error_code")

__all__ = [
    "setup_logging",
    "get_logger",
    "JSONFormatter",
    "GuardianLogFormatter",
    "LOG_TAG_EXIT_GATE",
    "LOG_TAG_PNL",
    "LOG_TAG_PORTFOLIO",
    "LOG_TAG_COOLDOWN",
]


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder for Decimal and other types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "__dict__"):
            return str(obj)
        return super().default(obj)


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in JSON_EXTRA_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, cls=DecimalEncoder)


def setup_logging(settings: Settings | None = None) -> logging.Logger:
    """
    Set up logging with console, text file and optional JSON handlers.

    Returns the root logger.
    """
    if settings is None:
        from lp_guardian.config.settings import get_settings

        settings = get_settings()

    level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(GuardianLogFormatter())
    root_logger.addHandler(console_handler)

    if settings.logging.file_enabled:
        logs_dir = Path(settings.logging.log_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
        file_handler = logging.FileHandler(logs_dir / f"lp_guardian_{timestamp}.log", encoding="utf-8")
        file_handler.setLevel(level)
        # Plain format for files (no colors, full timestamp)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        root_logger.addHandler(file_handler)

    if settings.logging.json_enabled:
        json_path = Path(settings.logging.json_file)
        json_path.parent.mkdir(parents=True, exist_ok=True)

        max_bytes = settings.logging.json_max_bytes
        backup_count = settings.logging.json_backup_count
        if max_bytes > 0 and backup_count > 0:
            json_handler: logging.Handler = RotatingFileHandler(
                json_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        else:
            json_handler = logging.FileHandler(json_path, encoding="utf-8")
        json_handler.setLevel(level)
        json_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(json_handler)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)


class GuardianLogFormatter(logging.Formatter):
    """
    Console formatter with colors keyed on level and log tag.

    Special tags:
    - [EXIT-GATE]: Cyan
    - [PNL]: Green
    - [PORTFOLIO]: Blue
    - [COOLDOWN]: Grey (dimmed)
    Warnings and errors keep their level colour regardless of tag.
    """

    RESET = "\033[0m"
    GREY = "\033[90m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BOLD_RED = "\033[1;91m"
    CYAN = "\033[96m"
    BLUE = "\033[94m"

    TAG_COLORS = {
        LOG_TAG_EXIT_GATE: CYAN,
        LOG_TAG_PNL: GREEN,
        LOG_TAG_PORTFOLIO: BLUE,
        LOG_TAG_COOLDOWN: GREY,
    }

    def __init__(self):
        super().__init__(datefmt="%H:%M:%S")
        self._formatters: dict[str, logging.Formatter] = {
            "DEBUG": logging.Formatter(f"{self.GREY}%(asctime)s [DEBUG] %(message)s{self.RESET}", datefmt="%H:%M:%S"),
            "INFO": logging.Formatter(f"{self.GREEN}%(asctime)s [INFO]{self.RESET} %(message)s", datefmt="%H:%M:%S"),
            "WARNING": logging.Formatter(
                f"{self.YELLOW}%(asctime)s [WARN] %(message)s{self.RESET}", datefmt="%H:%M:%S"
            ),
            "ERROR": logging.Formatter(f"{self.RED}%(asctime)s [ERROR] %(message)s{self.RESET}", datefmt="%H:%M:%S"),
            "CRITICAL": logging.Formatter(
                f"{self.BOLD_RED}%(asctime)s [CRITICAL] %(message)s{self.RESET}", datefmt="%H:%M:%S"
            ),
        }
        for tag, color in self.TAG_COLORS.items():
            self._formatters[tag] = logging.Formatter(
                f"{color}%(asctime)s {tag}{self.RESET} %(message)s", datefmt="%H:%M:%S"
            )

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno < logging.WARNING:
            msg = record.getMessage()
            for tag in self.TAG_COLORS:
                if tag in msg:
                    record.msg = msg.replace(tag, "").strip()
                    record.args = ()
                    return self._formatters[tag].format(record)

        formatter_key = record.levelname if record.levelname in self._formatters else "INFO"
        return self._formatters[formatter_key].format(record)
