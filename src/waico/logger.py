import json
import logging
import sys
from typing import Any, Literal

LogLevel = Literal["DEBUG", "INFO", "WARN", "ERROR"]

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}

_console = logging.getLogger("waico")
_configured = False


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once: timestamped lines on stderr."""
    global _configured
    if _configured:
        return
    logging.basicConfig(
        level=level.upper(),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # Per-request and per-load INFO lines drown out our own
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("transformers").setLevel(logging.WARNING)
    _configured = True


def log(level: LogLevel, message: str, data: dict[str, Any] | None = None) -> None:
    """Log a message with optional structured data.

    Args:
        level: Log level (DEBUG, INFO, WARN, ERROR)
        message: Log message
        data: Optional structured data, appended as JSON
    """
    data_str = ""
    if data:
        try:
            data_str = " " + json.dumps(data, default=str)
        except (TypeError, ValueError):
            data_str = f" {data}"

    _console.log(_LEVELS[level], message + data_str)
