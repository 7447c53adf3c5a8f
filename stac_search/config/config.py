"""
Configuration management for the STAC search service.

This module handles loading and validating configuration from YAML files
and environment variables. Exactly one search backend is configured per
process; it is chosen here and never switched per request.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from stac_search.utils.environment import (
    get_env,
    get_env_bool,
    get_env_float,
    get_env_int,
    get_env_list,
)

BackendKind = Literal["memory", "duckdb", "pgstac"]


class SearchSettings(BaseModel):
    """Limits applied to every search request."""

    default_limit: int = Field(10, ge=1, description="Limit used when a request sets none")
    max_limit: int = Field(10000, ge=1, description="Largest limit a request may ask for")

    @model_validator(mode="after")
    def check_default_within_max(self) -> "SearchSettings":
        if self.default_limit > self.max_limit:
            raise ValueError("default_limit cannot exceed max_limit")
        return self


class PoolConfig(BaseModel):
    """Connection pool settings shared by the database-backed backends."""

    size: int = Field(4, ge=1, description="Maximum number of pooled connections")
    acquire_timeout: float = Field(
        5.0, gt=0, description="Seconds a request may wait for a connection"
    )
    retry_interval: float = Field(
        0.0, ge=0, description="Seconds to wait before retrying a transient failure"
    )


class MemoryBackendConfig(BaseModel):
    """Configuration for the in-memory backend."""

    items: List[str] = Field(
        default_factory=list,
        description="JSON, GeoJSON or newline-delimited JSON files loaded at startup",
    )


class DuckDBBackendConfig(BaseModel):
    """Configuration for the parquet-backed DuckDB backend."""

    hrefs: List[str] = Field(default_factory=list, description="Parquet files or glob patterns")
    use_hive_partitioning: bool = False
    union_by_name: bool = True
    exact_geometry: bool = Field(
        True, description="Evaluate exact geometry predicates with the spatial extension"
    )
    install_extensions: bool = Field(
        True, description="Run INSTALL before LOAD for the spatial extension"
    )
    count_matched: bool = Field(True, description="Compute numberMatched with a window count")
    pool: PoolConfig = Field(default_factory=PoolConfig)


class PgstacBackendConfig(BaseModel):
    """Configuration for the pgstac database backend."""

    dsn: str = Field(..., description="libpq connection string")
    statement_timeout_ms: Optional[int] = Field(
        None, ge=1, description="statement_timeout applied to every pooled connection"
    )
    pool: PoolConfig = Field(default_factory=PoolConfig)


class BackendConfig(BaseModel):
    """The single backend wired into this process."""

    kind: BackendKind = "memory"
    memory: MemoryBackendConfig = Field(default_factory=MemoryBackendConfig)
    duckdb: DuckDBBackendConfig = Field(default_factory=DuckDBBackendConfig)
    pgstac: Optional[PgstacBackendConfig] = None

    @model_validator(mode="after")
    def check_selected_backend(self) -> "BackendConfig":
        if self.kind == "pgstac" and self.pgstac is None:
            raise ValueError("backend.pgstac must be configured when kind is 'pgstac'")
        if self.kind == "duckdb" and not self.duckdb.hrefs:
            raise ValueError("backend.duckdb.hrefs must list at least one parquet href")
        return self


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field("INFO", description="Default logging level")
    config_file: Optional[str] = Field(
        None, description="Path to logging configuration file"
    )
    log_file: Optional[str] = Field(None, description="Path to log file")


class Config(BaseModel):
    """Main configuration for the STAC search service."""

    search: SearchSettings = Field(default_factory=SearchSettings)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    debug: bool = Field(False, description="Enable debug mode")
    environment: str = Field("production", description="Deployment environment")


def load_config(config_path: Union[str, Path]) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to configuration YAML file

    Returns:
        Validated configuration object

    Raises:
        FileNotFoundError: If the configuration file does not exist
        ValueError: If the configuration is invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    config_data = _read_yaml(config_path)

    # Environment-specific overrides, e.g. config.test.yaml next to config.yaml
    env_config_path = config_path.parent / f"{config_path.stem}.{os.getenv('ENV', 'local')}.yaml"
    if env_config_path.exists():
        config_data = _deep_merge(config_data, _read_yaml(env_config_path))

    try:
        return Config(**config_data)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}")


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping, treating an empty file as an empty mapping."""
    try:
        with open(path, "r") as file:
            data = yaml.safe_load(file)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration in {path} must be a mapping")
    return data


def _deep_merge(base: Dict, override: Dict) -> Dict:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary with values to override in base

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config_from_env() -> Config:
    """
    Load configuration from environment variables.

    Environment variables are prefixed with STAC_SEARCH_ and use underscore
    as separator for nested keys.

    Examples:
        STAC_SEARCH_BACKEND_KIND=duckdb
        STAC_SEARCH_BACKEND_DUCKDB_HREFS=data/a.parquet,data/b.parquet
        STAC_SEARCH_BACKEND_PGSTAC_DSN=postgresql://user@localhost/postgis
        STAC_SEARCH_SEARCH_MAX_LIMIT=500
        STAC_SEARCH_LOGGING_LEVEL=DEBUG

    Returns:
        Validated configuration object with values from environment variables
    """
    config_data: Dict[str, Any] = {"search": {}, "backend": {}, "logging": {}}

    if (default_limit := get_env_int("SEARCH_DEFAULT_LIMIT")) is not None:
        config_data["search"]["default_limit"] = default_limit
    if (max_limit := get_env_int("SEARCH_MAX_LIMIT")) is not None:
        config_data["search"]["max_limit"] = max_limit

    backend = config_data["backend"]
    if kind := get_env("BACKEND_KIND"):
        backend["kind"] = kind

    if items := get_env_list("BACKEND_MEMORY_ITEMS"):
        backend["memory"] = {"items": items}

    duckdb: Dict[str, Any] = {}
    if hrefs := get_env_list("BACKEND_DUCKDB_HREFS"):
        duckdb["hrefs"] = hrefs
    if (hive := get_env_bool("BACKEND_DUCKDB_USE_HIVE_PARTITIONING")) is not None:
        duckdb["use_hive_partitioning"] = hive
    if (exact := get_env_bool("BACKEND_DUCKDB_EXACT_GEOMETRY")) is not None:
        duckdb["exact_geometry"] = exact
    if duckdb:
        backend["duckdb"] = duckdb

    if dsn := get_env("BACKEND_PGSTAC_DSN"):
        backend["pgstac"] = {"dsn": dsn}
        if (timeout := get_env_int("BACKEND_PGSTAC_STATEMENT_TIMEOUT_MS")) is not None:
            backend["pgstac"]["statement_timeout_ms"] = timeout

    pool: Dict[str, Any] = {}
    if (pool_size := get_env_int("BACKEND_POOL_SIZE")) is not None:
        pool["size"] = pool_size
    if (acquire_timeout := get_env_float("BACKEND_POOL_ACQUIRE_TIMEOUT")) is not None:
        pool["acquire_timeout"] = acquire_timeout
    if pool:
        backend.setdefault("duckdb", {})["pool"] = pool
        if "pgstac" in backend:
            backend["pgstac"]["pool"] = pool

    if log_level := get_env("LOGGING_LEVEL"):
        config_data["logging"]["level"] = log_level
    if log_file := get_env("LOGGING_LOG_FILE"):
        config_data["logging"]["log_file"] = log_file

    if (debug := get_env_bool("DEBUG")) is not None:
        config_data["debug"] = debug

    if env := get_env("ENVIRONMENT"):
        config_data["environment"] = env

    try:
        return Config(**config_data)
    except ValidationError as e:
        raise ValueError(f"Invalid environment configuration: {e}")
