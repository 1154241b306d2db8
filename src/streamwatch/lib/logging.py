"""
Logging configuration for streamwatch.
Provides structured JSON logging for files and Rich console output.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# Record attributes promoted into the JSON entry when set via ``extra``.
CONTEXT_FIELDS = (
    "platform",
    "channel_key",
    "external_id",
    "operation",
    "event_type",
    "loop",
)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    Formats log records as one JSON object per line.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ContextLogger:
    """
    Context-aware logger that adds structured fields to log records.
    Pollers use it to tag every record with their platform.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.context: Dict[str, Any] = {}

    def set_context(self, **kwargs: Any) -> None:
        """Set context fields that will be added to all log records."""
        self.context.update(kwargs)

    def clear_context(self) -> None:
        self.context.clear()

    def _log_with_context(self, level: int, msg: str, *args, **kwargs) -> None:
        extra = dict(self.context)
        extra.update(kwargs.get("extra", {}))
        kwargs["extra"] = extra
        self.logger.log(level, msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._log_with_context(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._log_with_context(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._log_with_context(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._log_with_context(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        kwargs["exc_info"] = True
        self.error(msg, *args, **kwargs)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    console_output: bool = True,
    json_format: bool = True,
    rich_console: bool = False,
) -> None:
    """
    Setup logging configuration for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (optional, always JSON)
        console_output: Whether to output to console
        json_format: Whether to use JSON formatting on the console
        rich_console: Use Rich console formatting (overrides json_format for console)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if json_format and not rich_console:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handlers = []

    if console_output:
        if rich_console:
            console_handler = RichHandler(
                console=Console(stderr=True),
                show_time=True,
                show_path=True,
                rich_tracebacks=True,
            )
        else:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(formatter)

        console_handler.setLevel(numeric_level)
        handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(numeric_level)
        handlers.append(file_handler)

    for handler in handlers:
        root_logger.addHandler(handler)

    # Reduce noise from verbose libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger instance."""
    return ContextLogger(name)


def get_app_logger(module_name: str) -> ContextLogger:
    """
    Get an application logger with consistent naming.

    Args:
        module_name: Module name (e.g., 'pollers.youtube')

    Returns:
        ContextLogger named ``streamwatch.<module_name>``
    """
    return get_logger(f"streamwatch.{module_name}")
