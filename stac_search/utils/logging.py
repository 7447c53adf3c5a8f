"""
Logging configuration for the STAC search service.

This module provides utilities for configuring logging throughout the application.
"""

import logging
import logging.config
import os
import sys
from typing import Any, Dict, Optional

import yaml

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DETAILED_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "%(filename)s:%(lineno)d - %(message)s"
)


def _default_config(log_level: str, log_file: Optional[str]) -> Dict[str, Any]:
    """Build the dictConfig used when no YAML logging file is given."""
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": "standard",
            "stream": "ext://sys.stderr",
        },
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "DEBUG",
            "formatter": "detailed",
            "filename": log_file,
            "maxBytes": 10485760,  # 10 MB
            "backupCount": 5,
            "encoding": "utf8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": DEFAULT_FORMAT},
            "detailed": {"format": DETAILED_FORMAT},
        },
        "handlers": handlers,
        "loggers": {
            "": {
                "handlers": list(handlers),
                "level": log_level,
                "propagate": True,
            },
        },
    }


def configure_logging(
    config_path: Optional[str] = None,
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        config_path: Path to logging configuration YAML file
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path of a rotating log file
    """
    level = (log_level or "INFO").upper()
    if not isinstance(getattr(logging, level, None), int):
        level = "INFO"

    config = _default_config(level, log_file)

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, "r") as file:
                file_config = yaml.safe_load(file)
            if file_config:
                config = file_config
        except (OSError, yaml.YAMLError) as e:
            print(f"Error loading logging config from {config_path}: {e}", file=sys.stderr)
            print("Using default logging configuration", file=sys.stderr)

    if log_file:
        log_directory = os.path.dirname(log_file)
        if log_directory:
            os.makedirs(log_directory, exist_ok=True)

    try:
        logging.config.dictConfig(config)
    except (ValueError, TypeError, AttributeError, ImportError) as e:
        print(f"Error configuring logging: {e}", file=sys.stderr)
        print("Falling back to basic configuration", file=sys.stderr)
        logging.basicConfig(
            level=logging.INFO,
            format=DEFAULT_FORMAT,
            handlers=[logging.StreamHandler(sys.stderr)],
        )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)
