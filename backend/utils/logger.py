import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from utils.utcnow import utcnow

_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; structured fields go under ``data``"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        fields = getattr(record, "fields", None)
        if fields:
            payload["data"] = fields
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # Decimal amounts and datetimes render as strings.
        return json.dumps(payload, default=str)


class KeyValueFormatter(logging.Formatter):
    """Human-readable line with ``key=value`` pairs appended"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", None)
        if not fields:
            return line
        return line + " | " + " ".join(f"{key}={value}" for key, value in fields.items())


class ContextLogger:
    """Structured logger: keyword arguments become fields of the record.

    ``with_context`` returns a child logger that stamps the given fields on
    every message, e.g. ``logger.with_context(address=address)``.
    """

    def __init__(self, name: str, context: Optional[dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self._context = dict(context or {})

    def with_context(self, **fields: Any) -> "ContextLogger":
        return ContextLogger(self.logger.name, {**self._context, **fields})

    def _log(self, level: int, msg: str, exc_info: Any = None, **fields: Any):
        if not self.logger.isEnabledFor(level):
            return
        merged = {**self._context, **fields}
        # stacklevel 3 points records at the caller, not this wrapper
        self.logger.log(
            level,
            msg,
            exc_info=exc_info,
            stacklevel=3,
            extra={"fields": merged or None},
        )

    def debug(self, msg: str, **fields: Any):
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any):
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields: Any):
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields: Any):
        self._log(logging.ERROR, msg, **fields)

    def exception(self, msg: str, **fields: Any):
        self._log(logging.ERROR, msg, exc_info=True, **fields)


def setup_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None):
    """Configure the root logger once, at worker start"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers = []

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(
        JSONFormatter()
        if json_format
        else KeyValueFormatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(name)


poller_logger = get_logger("poller")
fetch_logger = get_logger("fetch")
pnl_logger = get_logger("pnl")
