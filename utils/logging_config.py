"""
Structured Logging Configuration for the mirror bot.

Provides log rotation, structured JSON output, and helpers that attach event
payloads (mirror results, gate skips, selection changes) to log records.
"""

import logging
import logging.handlers
import os
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class StructuredLogFormatter(logging.Formatter):
    """Formatter that outputs structured JSON log entries."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        if hasattr(record, "extra_data"):
            log_entry["data"] = record.extra_data

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter that appends the structured payload, if any."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        data = getattr(record, "extra_data", None)
        if data:
            line = f"{line} {json.dumps(data, default=str, separators=(',', ':'))}"
        return line


class MirrorLogger:
    """
    Centralized logger configuration.

    Features:
    - Log rotation (10MB files, 5 backups)
    - Structured JSON output to file
    - Human-readable console output
    """

    _instance: Optional["MirrorLogger"] = None

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._configured = False
        return cls._instance

    def configure(
        self,
        level: str = "INFO",
        log_dir: Optional[str] = "logs",
        json_console: bool = False,
    ):
        """Configure root logging with rotation and structured output."""
        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)

        # Clear existing handlers
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler()
        if json_console:
            console_handler.setFormatter(StructuredLogFormatter())
        else:
            console_handler.setFormatter(
                ConsoleFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        console_handler.setLevel(_parse_level(level))
        root_logger.addHandler(console_handler)

        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, "mirror.log"),
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setFormatter(StructuredLogFormatter())
            file_handler.setLevel(logging.DEBUG)
            root_logger.addHandler(file_handler)

        # Silence verbose third-party loggers
        for noisy in ("aiohttp", "asyncio", "urllib3", "web3", "httpx"):
            logging.getLogger(noisy).setLevel(logging.WARNING)

        self._configured = True

    @property
    def configured(self) -> bool:
        return self._configured


def _parse_level(level: str) -> int:
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: str = "INFO", log_dir: Optional[str] = "logs", json_console: bool = False):
    """Configure process-wide logging once at startup."""
    MirrorLogger().configure(level=level, log_dir=log_dir, json_console=json_console)


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    exc_info: bool = False,
):
    """Log a message with a structured payload."""
    extra = {"extra_data": data} if data else {}
    logger.log(level, message, extra=extra, exc_info=exc_info)


def log_mirror_result(logger: logging.Logger, trade_info: Dict[str, Any], result_info: Dict[str, Any]):
    """Log the outcome of one mirrored signal; failures at WARNING."""
    level = logging.WARNING if result_info.get("status") == "failed" else logging.INFO
    log_event(logger, level, "trade mirrored", {**trade_info, **result_info})


def log_risk_event(
    logger: logging.Logger,
    event_type: str,
    details: Dict[str, Any],
    action_taken: str,
):
    """Log a risk management event (breaker trips, allowance shortfalls)."""
    log_event(
        logger,
        logging.WARNING,
        f"Risk event: {event_type}",
        {"event_type": event_type, "action": action_taken, **details},
    )
