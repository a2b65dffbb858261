"""
Centralized logging for the subscription ledger.

Per-module file loggers with human-readable or JSON formatters. Each
component asks for its own logger once at construction time; handlers are
cached so repeated construction (tests, re-wiring) never duplicates output.

Usage:
    from ledger_logging.logger_manager import create_module_log_directories, setup_module_logger

    create_module_log_directories()
    logger = setup_module_logger("monitor_registry", "monitor_registry.log",
                                 module_folder="Monitor_Logs")
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

_PROJECT_ROOT = Path(__file__).parent.parent

try:
    from config.loader import get_config

    _app_config = get_config().get_app_config()
except ImportError:
    _app_config = {}

_LOG_DIR = os.getenv(
    "LEDGER_LOG_DIR",
    str(_PROJECT_ROOT / _app_config.get("logging", {}).get("log_dir", "logs")),
)
_MODULE_FOLDERS = _app_config.get("logging", {}).get(
    "module_folders",
    {
        "main": "Main_Logs",
        "event_source": "Event_Source_Logs",
        "event_codec": "Event_Source_Logs",
        "block_clock": "Event_Source_Logs",
        "monitor_registry": "Monitor_Logs",
        "event_cache": "Cache_Logs",
        "analytics": "Analytics_Logs",
        "sdk": "SDK_Logs",
    },
)


# ============================================================================
# FORMATTERS
# ============================================================================


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for key in (
            "handle_id",
            "block_number",
            "event_kind",
            "scope",
            "error",
        ):
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Pretty-printed log formatter for human-readable files."""

    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-24s | %(message)s"
    DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self.FORMAT, datefmt=self.DATE_FORMAT)


# ============================================================================
# LOGGER FACTORY
# ============================================================================

_logger_cache: dict[str, logging.Logger] = {}


def create_module_log_directories() -> dict[str, str]:
    """
    Create the log directory tree.

    Returns dict mapping module key to absolute folder path.
    """
    created = {}
    os.makedirs(_LOG_DIR, exist_ok=True)
    for key, folder_name in _MODULE_FOLDERS.items():
        folder_path = os.path.join(_LOG_DIR, folder_name)
        os.makedirs(folder_path, exist_ok=True)
        created[key] = folder_path
    return created


def setup_module_logger(
    name: str,
    log_file: str,
    level: int = logging.INFO,
    module_folder: str | None = None,
    use_json_formatter: bool = False,
) -> logging.Logger:
    """
    Create a module-specific logger with a file handler.

    Args:
        name: Logger name (unique per component).
        log_file: Log filename (placed inside module_folder if specified).
        level: Logging level (default INFO).
        module_folder: Subfolder within the log directory (e.g. 'Monitor_Logs').
        use_json_formatter: Use structured JSON format (default human-readable).

    Returns:
        Configured logging.Logger instance.
    """
    cache_key = f"{name}:{module_folder}:{log_file}"
    if cache_key in _logger_cache:
        return _logger_cache[cache_key]

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        _logger_cache[cache_key] = logger
        return logger

    if module_folder:
        log_path = os.path.join(_LOG_DIR, module_folder, log_file)
    else:
        log_path = os.path.join(_LOG_DIR, log_file)
    os.makedirs(os.path.dirname(log_path), exist_ok=True)

    formatter: logging.Formatter
    if use_json_formatter:
        formatter = JSONFormatter()
    else:
        formatter = HumanReadableFormatter()

    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    logger.propagate = False

    _logger_cache[cache_key] = logger
    return logger
