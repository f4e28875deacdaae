"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Upper bound on probe worker threads.
MAX_MONITOR_WORKERS = 64

DEFAULT_RDAP_BASE_URL = "https://rdap.org"


@dataclass(frozen=True)
class MonitorConfig:
    """Configuration for the scheduler and checkers."""

    workers: int = 8  # probe worker threads
    discovery_interval: int = 60  # seconds between reconciliations against the store
    rdap_base_url: str = DEFAULT_RDAP_BASE_URL  # registration lookups for domain checks

    def __post_init__(self) -> None:
        if not (1 <= self.workers <= MAX_MONITOR_WORKERS):
            raise ConfigError(f"Monitor workers must be between 1 and {MAX_MONITOR_WORKERS} (got {self.workers})")
        if self.discovery_interval < 1:
            raise ConfigError(f"Discovery interval must be at least 1 second (got {self.discovery_interval})")
        if not self.rdap_base_url.startswith(("http://", "https://")):
            raise ConfigError(f"RDAP base URL must start with http:// or https://, got '{self.rdap_base_url}'")


def _get_default_db_path() -> str:
    """Get the default database path using XDG-compliant directory.

    Returns ~/.local/share/monty/monty.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "monty" / "monty.db")


DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for SQLite database."""

    path: str = DEFAULT_DB_PATH
    retention_days: int = 30

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Database path cannot be empty")
        if self.retention_days < 1:
            raise ConfigError("Database retention_days must be at least 1")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for JSON API server."""

    enabled: bool = True
    host: str = ""
    port: int = 3000

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class Config:
    """Main configuration container.

    endpoints holds raw endpoint payloads; they are validated by the
    endpoint store when seeding an empty database.
    """

    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    endpoints: list[dict] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.endpoints, list):
            raise ConfigError("Endpoints must be a list")


def _parse_monitor_config(data: dict | None) -> MonitorConfig:
    """Parse monitor configuration section."""
    if data is None:
        return MonitorConfig()
    if not isinstance(data, dict):
        raise ConfigError("'monitor' section must be a dictionary")

    return MonitorConfig(
        workers=int(data.get("workers", 8)),
        discovery_interval=int(data.get("discovery_interval", 60)),
        rdap_base_url=str(data.get("rdap_base_url", DEFAULT_RDAP_BASE_URL)).rstrip("/"),
    )


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    if not isinstance(data, dict):
        raise ConfigError("'database' section must be a dictionary")

    return DatabaseConfig(
        path=os.path.expanduser(str(data.get("path", DEFAULT_DB_PATH))),
        retention_days=int(data.get("retention_days", 30)),
    )


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()
    if not isinstance(data, dict):
        raise ConfigError("'api' section must be a dictionary")

    return ApiConfig(
        enabled=bool(data.get("enabled", True)),
        host=str(data.get("host", "")),
        port=int(data.get("port", 3000)),
    )


def _parse_endpoints(data: list | None) -> list[dict]:
    """Parse the optional seed endpoints section."""
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError("'endpoints' must be a list")

    for i, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigError(f"Endpoint entry {i} must be a dictionary")
        if not entry.get("url"):
            raise ConfigError(f"Endpoint entry {i} is missing 'url' field")
    return [dict(entry) for entry in data]


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - MONTY_MONITOR_WORKERS: Override monitor.workers
    - MONTY_API_PORT: Override api.port
    - MONTY_API_ENABLED: Override api.enabled (true/false)
    - MONTY_DB_PATH: Override database.path
    - MONTY_DB_RETENTION_DAYS: Override database.retention_days
    """
    for section in ("monitor", "api", "database"):
        if config_data.get(section) is None:
            config_data[section] = {}

    try:
        workers = os.environ.get("MONTY_MONITOR_WORKERS")
        if workers is not None:
            config_data["monitor"]["workers"] = int(workers)

        api_port = os.environ.get("MONTY_API_PORT")
        if api_port is not None:
            config_data["api"]["port"] = int(api_port)

        db_retention = os.environ.get("MONTY_DB_RETENTION_DAYS")
        if db_retention is not None:
            config_data["database"]["retention_days"] = int(db_retention)
    except ValueError as e:
        raise ConfigError(f"Invalid numeric environment override: {e}")

    api_enabled = os.environ.get("MONTY_API_ENABLED")
    if api_enabled is not None:
        config_data["api"]["enabled"] = api_enabled.lower() in ("true", "1", "yes")

    db_path = os.environ.get("MONTY_DB_PATH")
    if db_path is not None:
        config_data["database"]["path"] = db_path

    return config_data


def load_config(config_path: str | None = None) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file, or None to use
            defaults (environment overrides still apply).

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    data: dict = {}

    if config_path is not None:
        path = Path(config_path)

        if not path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}")

        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ConfigError("Configuration must be a YAML dictionary")
            data = loaded

    data = _apply_env_overrides(data)

    try:
        return Config(
            monitor=_parse_monitor_config(data.get("monitor")),
            database=_parse_database_config(data.get("database")),
            api=_parse_api_config(data.get("api")),
            endpoints=_parse_endpoints(data.get("endpoints")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
