"""
CLI helper utilities.

This module provides shared utilities for CLI commands including:
- Configuration loading
- Logging setup
- Console output helpers
"""

import json
import logging
import os
import sys
import tempfile
from datetime import datetime, timezone
from logging import Handler
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

from constants import LoggingConfig
from core.validators import InputValidator

# Type alias for log levels
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class JSONFormatter(logging.Formatter):
    """Single-line JSON log records."""

    _STANDARD_FIELDS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            LoggingConfig.JSON_DATE_FORMAT
        )
        payload: Dict[str, Any] = {
            "timestamp": timestamp,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # Fields passed through ``extra=``
        for key, value in record.__dict__.items():
            if key in self._STANDARD_FIELDS or key.startswith("_") or key in payload:
                continue
            try:
                json.dumps(value)
                payload[key] = value
            except TypeError:
                payload[key] = str(value)

        return json.dumps(payload, ensure_ascii=False)


_MANAGED_HANDLERS: List[Handler] = []
_LOGGING_SIGNATURE: Optional[Tuple[Any, ...]] = None
_LAST_LOG_FILE: Optional[str] = None


def get_default_config_path() -> str:
    """Return ``config.json`` in the project root (three levels above this package)."""
    project_root = Path(__file__).resolve().parent.parent.parent.parent
    return str(project_root / "config.json")


def _clear_managed_handlers() -> None:
    global _MANAGED_HANDLERS
    root_logger = logging.getLogger()
    for handler in _MANAGED_HANDLERS:
        root_logger.removeHandler(handler)
        handler.close()
    _MANAGED_HANDLERS = []


def _coerce_positive_int(value: Any, default: int) -> int:
    try:
        numeric = int(value)
        return numeric if numeric > 0 else default
    except (TypeError, ValueError):
        return default


def _open_log_file(file_path: str, formatter: logging.Formatter, max_bytes: int, backup_count: int) -> Tuple[Optional[Handler], Optional[str]]:
    """Open a rotating log file, trying the temp dir and home dir when the requested path fails."""
    log_filename = os.path.basename(file_path) or LoggingConfig.DEFAULT_LOG_FILENAME
    candidates = [
        file_path,
        os.path.join(tempfile.gettempdir(), log_filename),
        os.path.join(str(Path.home()), log_filename),
    ]
    for candidate in candidates:
        try:
            log_dir = os.path.dirname(candidate)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            handler = RotatingFileHandler(
                candidate, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        except OSError as exc:
            print(f"  Could not create log at {candidate}: {exc}")
            continue
        handler.setFormatter(formatter)
        if candidate != file_path:
            print(f"Note: Using fallback log file: {candidate}")
        return handler, candidate

    print(f"Warning: Could not write log file to any location (requested {file_path}); logging to console only")
    return None, None


def setup_logging(
    level: LogLevel = LoggingConfig.DEFAULT_LOG_LEVEL,
    log_file: Optional[str] = None,
    *,
    config: Optional[Dict[str, Any]] = None,
    include_console: bool = True,
) -> Optional[str]:
    """
    Configure root logging from the ``logging`` config section.

    Recognised keys: ``level``, ``file``, ``format`` (``text`` or ``json``),
    ``date_format`` and ``rotation`` (``max_mb``, ``backup_count``).
    Calling again with the same settings is a no-op.

    Returns:
        The log file path actually used, or None when logging to console only.
    """
    global _LOGGING_SIGNATURE, _LAST_LOG_FILE

    config_dict = dict(config or {})
    resolved_level = str(config_dict.get("level", level or LoggingConfig.DEFAULT_LOG_LEVEL))
    log_level = getattr(logging, resolved_level.upper(), logging.INFO)
    file_path = log_file if log_file is not None else config_dict.get("file")

    format_style = str(config_dict.get("format", LoggingConfig.DEFAULT_FORMAT_STYLE)).lower()
    if format_style not in LoggingConfig.SUPPORTED_FORMATS:
        format_style = LoggingConfig.DEFAULT_FORMAT_STYLE

    formatter: logging.Formatter
    if format_style == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            fmt=LoggingConfig.LOG_FORMAT,
            datefmt=config_dict.get("date_format", LoggingConfig.DATE_FORMAT),
        )

    rotation = config_dict.get("rotation") if isinstance(config_dict.get("rotation"), dict) else {}
    max_bytes = _coerce_positive_int(rotation.get("max_mb"), LoggingConfig.MAX_LOG_FILE_MB) * 1024 * 1024
    backup_count = _coerce_positive_int(rotation.get("backup_count"), LoggingConfig.LOG_BACKUP_COUNT)

    signature = (log_level, file_path, format_style, include_console, max_bytes, backup_count)
    if _LOGGING_SIGNATURE == signature and _MANAGED_HANDLERS:
        return _LAST_LOG_FILE

    handlers: List[Handler] = []
    actual_log_file = None
    if file_path:
        file_handler, actual_log_file = _open_log_file(file_path, formatter, max_bytes, backup_count)
        if file_handler is not None:
            handlers.append(file_handler)

    if include_console or not handlers:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    _clear_managed_handlers()
    root_logger = logging.getLogger()
    logging.captureWarnings(True)
    root_logger.setLevel(log_level)
    for handler in handlers:
        root_logger.addHandler(handler)
        _MANAGED_HANDLERS.append(handler)

    _LOGGING_SIGNATURE = signature
    _LAST_LOG_FILE = actual_log_file
    if actual_log_file:
        logging.getLogger(__name__).info(f"Logging to: {actual_log_file}")
    return actual_log_file


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load a JSON configuration file.

    The path is checked for traversal and symlinks before it is opened.

    Raises:
        ValueError: If the path is empty or the file is not a JSON object.
        FileNotFoundError: If the file does not exist.
        PermissionError: If the file cannot be read.
    """
    if not config_path:
        raise ValueError("config_path cannot be empty")

    try:
        validated_path = InputValidator.validate_file_path(
            config_path, allowed_extensions=InputValidator.JSON_EXTENSIONS,
        )
    except FileNotFoundError:
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Create a config.json file or specify one with --config"
        )

    try:
        with open(validated_path, "r", encoding="utf-8") as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(
            f"Invalid JSON in configuration file {validated_path} at line {e.lineno}, column {e.colno}: {e.msg}"
        )
    except UnicodeDecodeError as e:
        raise ValueError(f"File encoding error in {validated_path}: {e}")

    if not isinstance(config, dict):
        raise ValueError(f"Configuration file must contain a JSON object, got {type(config).__name__}")

    if config.get("dataverse", {}).get("client_secret"):
        logging.getLogger(__name__).warning(
            "client_secret found in configuration file; prefer the DATAVERSE_CLIENT_SECRET environment variable"
        )
    return config


def print_header(title: str, width: int = 60) -> None:
    print("\n" + "=" * width)
    print(title)
    print("=" * width)


def print_footer(width: int = 60) -> None:
    print("=" * width + "\n")


def format_count_summary(items: Dict[str, int], prefix: str = "  ") -> str:
    """Format a dictionary of counts for display, largest first."""
    return "\n".join(f"{prefix}{name}: {count}" for name, count in sorted(items.items(), key=lambda x: -x[1]))


def confirm_action(prompt: str, default: bool = False) -> bool:
    """Ask a yes/no question on stdin."""
    suffix = "[Y/n]" if default else "[y/N]"
    response = input(f"{prompt} {suffix}: ").strip().lower()
    if not response:
        return default
    return response in ("y", "yes")


def write_output(path: str, content: str) -> Path:
    """Write text output to a validated path and return it."""
    target = InputValidator.validate_output_path(path)
    target.write_text(content, encoding="utf-8")
    return target
