"""
Environment variable management for the STAC search service.

This module provides utilities for loading and accessing environment variables.
"""

import os
from pathlib import Path
from typing import Any, List, Optional, Union

from dotenv import load_dotenv

ENV_PREFIX = "STAC_SEARCH_"


def load_env_file(env_file: Optional[Union[str, Path]] = None) -> bool:
    """
    Load environment variables from a .env file.

    Args:
        env_file: Path to .env file. If not provided, looks for .env in the
                  current directory and its parents.

    Returns:
        True if at least one environment variable was loaded, False otherwise.
    """
    if env_file:
        return load_dotenv(env_file)
    return load_dotenv(dotenv_path=None, override=False)


def get_env(key: str, default: Any = None) -> Optional[str]:
    """Get an environment variable, looking it up with the service prefix."""
    return os.getenv(f"{ENV_PREFIX}{key}", default)


def get_env_bool(key: str, default: Optional[bool] = None) -> Optional[bool]:
    """
    Get a boolean environment variable.

    Args:
        key: Environment variable name, without the service prefix
        default: Default value if environment variable is not set

    Returns:
        True if the value is "1", "true", "yes", or "y" (case insensitive),
        False for any other value, default if unset.
    """
    value = get_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "y")


def get_env_int(key: str, default: Optional[int] = None) -> Optional[int]:
    """
    Get an integer environment variable.

    Raises:
        ValueError: If the variable is set but is not an integer
    """
    value = get_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{key} must be an integer, got {value!r}")


def get_env_float(key: str, default: Optional[float] = None) -> Optional[float]:
    """
    Get a float environment variable.

    Raises:
        ValueError: If the variable is set but is not a number
    """
    value = get_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{key} must be a number, got {value!r}")


def get_env_list(key: str, default: Optional[List[str]] = None, separator: str = ",") -> List[str]:
    """
    Get a list environment variable by splitting a string with the given separator.

    Args:
        key: Environment variable name, without the service prefix
        default: Default value if environment variable is not set
        separator: String separator to split the environment variable value

    Returns:
        List of strings from environment variable or default if not set
    """
    value = get_env(key)
    if value is None:
        return default or []
    return [item.strip() for item in value.split(separator) if item.strip()]
