"""Coloured console logging for the load-test harness.

One module-level logger is shared by every component so output from
concurrent workers interleaves on a single handler.
"""

from __future__ import annotations

import logging
import re
from typing import Any, ClassVar

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def _clean(value: Any) -> Any:
    return _CONTROL_CHARS.sub("", value) if isinstance(value, str) else value


class LogMessageFilter(logging.Filter):
    """Strip control characters that server replies sometimes carry."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _CONTROL_CHARS.sub("", record.msg)
        if isinstance(record.args, dict):
            record.args = {key: _clean(value) for key, value in record.args.items()}
        elif record.args:
            record.args = tuple(_clean(value) for value in record.args)
        if record.exc_text:
            record.exc_text = _CONTROL_CHARS.sub("", record.exc_text)
        return True


class ColoredFormatter(logging.Formatter):
    """Formatter that colours the whole line by level."""

    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\033[90m",  # Grey
        "INFO": "\033[92m",  # Green
        "WARNING": "\033[93m",  # Yellow
        "ERROR": "\033[91m",  # Red
        "CRITICAL": "\033[95m",  # Magenta
    }
    RESET: ClassVar[str] = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLORS.get(record.levelname, "")
        formatted = super().format(record)
        if colour:
            formatted = f"{colour}{formatted}{self.RESET}"
        return formatted


logger = logging.getLogger("pipeline_loadtest")
logger.setLevel(logging.INFO)

console_handler = logging.StreamHandler()
console_handler.setLevel(logging.DEBUG)
console_handler.setFormatter(
    ColoredFormatter("%(asctime)s - %(levelname)s - %(message)s")
)
console_handler.addFilter(LogMessageFilter())
logger.addHandler(console_handler)

# Keep records off the root logger
logger.propagate = False


def set_log_level(level: str) -> None:
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")
    logger.setLevel(numeric)
