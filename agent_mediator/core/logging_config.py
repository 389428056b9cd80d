"""
Logging Configuration Module.

This module provides centralized logging configuration for the mediator.
Every module logs through ``logging.getLogger(__name__)``; this module only
installs handlers and per-module levels on the root logger.

Features:
- Configurable log levels per module
- Console and file logging
- Simple, detailed and JSON line formats
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional

LOG_FILE_NAME = "agent_mediator.log"

# Define log formats
SIMPLE_FORMAT = "%(levelname)s - %(name)s - %(message)s"

DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(funcName)s() - %(message)s"

JSON_FORMAT = (
    '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
    '"module": "%(filename)s", "function": "%(funcName)s", "line": %(lineno)d, '
    '"message": "%(message)s"}'
)

_FORMATS = {"simple": SIMPLE_FORMAT, "detailed": DETAILED_FORMAT, "json": JSON_FORMAT}

# Module-specific log levels
MODULE_LOG_LEVELS: Dict[str, str] = {
    # Core modules
    "agent_mediator": "INFO",
    "agent_mediator.permissions": "DEBUG",
    "agent_mediator.shell": "DEBUG",
    "agent_mediator.mcp": "DEBUG",
    "agent_mediator.capabilities": "DEBUG",
    # Third-party libraries (reduce noise)
    "mcp": "WARNING",
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "asyncio": "WARNING",
}


def _env_defaults() -> Dict[str, object]:
    """Fallback configuration read from the environment when no explicit values are given."""
    return {
        "log_level": os.getenv("AGENT_MEDIATOR_LOG_LEVEL", "INFO").upper(),
        "log_format": os.getenv("AGENT_MEDIATOR_LOG_FORMAT", "detailed"),
        "log_file_dir": os.getenv("AGENT_MEDIATOR_LOG_FILE_DIR", "logs"),
    }


def format_for(log_format: str) -> str:
    return _FORMATS.get(log_format, DETAILED_FORMAT)


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    enable_file: bool = False,
    log_file_dir: Optional[str] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        log_level: Override default log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Override default format (simple, detailed, json)
        enable_file: Whether to enable file logging
        log_file_dir: Directory for the log file (created when missing)
    """
    defaults = _env_defaults()
    level = (log_level or str(defaults["log_level"])).upper()
    fmt = log_format or str(defaults["log_format"])

    formatter = logging.Formatter(format_for(fmt), datefmt="%Y-%m-%d %H:%M:%S")

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all levels, filter at handler level

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if enable_file:
        directory = Path(log_file_dir or str(defaults["log_file_dir"]))
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(directory / LOG_FILE_NAME)
        file_handler.setLevel(logging.DEBUG)  # Always log DEBUG to file
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for module_name, module_level in MODULE_LOG_LEVELS.items():
        logging.getLogger(module_name).setLevel(module_level)

    root_logger.info("Logging configured: level=%s, format=%s, file_logging=%s", level, fmt, enable_file)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: The module name (typically __name__)

    Returns:
        A configured logger instance
    """
    return logging.getLogger(name)
