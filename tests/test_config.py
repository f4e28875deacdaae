"""Tests for the configuration module."""

from pathlib import Path

import pytest

from monty.config import (
    DEFAULT_RDAP_BASE_URL,
    MAX_MONITOR_WORKERS,
    ApiConfig,
    Config,
    ConfigError,
    DatabaseConfig,
    MonitorConfig,
    load_config,
)


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Create a temporary directory for config files."""
    return tmp_path


@pytest.fixture
def valid_config_content() -> str:
    """Return a valid configuration YAML content."""
    return """monitor:
  workers: 4
  discovery_interval: 30
  rdap_base_url: https://rdap.example.net/

database:
  path: ./data/monty.db
  retention_days: 7

api:
  enabled: true
  host: 127.0.0.1
  port: 8080

endpoints:
  - url: http://localhost:3000/health
    interval: 10
  - url: example.com
    check_type: dns
    interval: 60
"""


@pytest.fixture(autouse=True)
def clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove environment overrides that would leak into tests."""
    for name in (
        "MONTY_MONITOR_WORKERS",
        "MONTY_API_PORT",
        "MONTY_API_ENABLED",
        "MONTY_DB_PATH",
        "MONTY_DB_RETENTION_DAYS",
    ):
        monkeypatch.delenv(name, raising=False)


class TestMonitorConfig:
    """Tests for MonitorConfig dataclass."""

    def test_defaults(self) -> None:
        """MonitorConfig has sensible defaults."""
        config = MonitorConfig()
        assert config.workers == 8
        assert config.discovery_interval == 60
        assert config.rdap_base_url == DEFAULT_RDAP_BASE_URL

    def test_rejects_zero_workers(self) -> None:
        """At least one worker is required."""
        with pytest.raises(ConfigError, match="workers"):
            MonitorConfig(workers=0)

    def test_rejects_too_many_workers(self) -> None:
        """Worker count is capped."""
        with pytest.raises(ConfigError, match="workers"):
            MonitorConfig(workers=MAX_MONITOR_WORKERS + 1)

    def test_rejects_zero_discovery_interval(self) -> None:
        """Discovery interval must be at least one second."""
        with pytest.raises(ConfigError, match="Discovery interval"):
            MonitorConfig(discovery_interval=0)

    def test_rejects_rdap_url_without_scheme(self) -> None:
        """RDAP base URL must be http(s)."""
        with pytest.raises(ConfigError, match="RDAP"):
            MonitorConfig(rdap_base_url="rdap.org")


class TestDatabaseConfig:
    """Tests for DatabaseConfig dataclass."""

    def test_defaults_to_xdg_data_dir(self) -> None:
        """Default database lives under ~/.local/share/monty."""
        config = DatabaseConfig()
        assert config.path.endswith(str(Path(".local") / "share" / "monty" / "monty.db"))
        assert config.retention_days == 30

    def test_rejects_empty_path(self) -> None:
        """Empty path is rejected."""
        with pytest.raises(ConfigError, match="path cannot be empty"):
            DatabaseConfig(path="")

    def test_rejects_zero_retention(self) -> None:
        """Retention must be at least one day."""
        with pytest.raises(ConfigError, match="retention_days"):
            DatabaseConfig(retention_days=0)


class TestApiConfig:
    """Tests for ApiConfig dataclass."""

    def test_defaults(self) -> None:
        """API listens on all interfaces, port 3000."""
        config = ApiConfig()
        assert config.enabled is True
        assert config.host == ""
        assert config.port == 3000

    @pytest.mark.parametrize("port", [0, 65536])
    def test_rejects_invalid_port(self, port: int) -> None:
        """Ports outside 1-65535 are rejected."""
        with pytest.raises(ConfigError, match="port"):
            ApiConfig(port=port)


class TestLoadConfig:
    """Tests for load_config function."""

    def test_loads_valid_config(self, config_dir: Path, valid_config_content: str) -> None:
        """Valid YAML file is loaded into a Config."""
        config_file = config_dir / "config.yaml"
        config_file.write_text(valid_config_content)

        config = load_config(str(config_file))

        assert isinstance(config, Config)
        assert config.monitor.workers == 4
        assert config.monitor.discovery_interval == 30
        assert config.monitor.rdap_base_url == "https://rdap.example.net"
        assert config.database.path == "./data/monty.db"
        assert config.database.retention_days == 7
        assert config.api.host == "127.0.0.1"
        assert config.api.port == 8080
        assert len(config.endpoints) == 2
        assert config.endpoints[1]["check_type"] == "dns"

    def test_no_path_uses_defaults(self) -> None:
        """Without a file every section uses its defaults."""
        config = load_config(None)

        assert config.monitor == MonitorConfig()
        assert config.api == ApiConfig()
        assert config.endpoints == []

    def test_empty_file_uses_defaults(self, config_dir: Path) -> None:
        """An empty YAML file is equivalent to no configuration."""
        config_file = config_dir / "config.yaml"
        config_file.write_text("")

        config = load_config(str(config_file))

        assert config.monitor.workers == 8

    def test_missing_file_raises(self, config_dir: Path) -> None:
        """Explicitly requested file must exist."""
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(config_dir / "missing.yaml"))

    def test_invalid_yaml_raises(self, config_dir: Path) -> None:
        """Malformed YAML is reported as ConfigError."""
        config_file = config_dir / "config.yaml"
        config_file.write_text("monitor: [unclosed")

        with pytest.raises(ConfigError, match="Failed to parse YAML"):
            load_config(str(config_file))

    def test_non_dict_root_raises(self, config_dir: Path) -> None:
        """Top-level YAML must be a mapping."""
        config_file = config_dir / "config.yaml"
        config_file.write_text("- just\n- a list\n")

        with pytest.raises(ConfigError, match="dictionary"):
            load_config(str(config_file))

    def test_non_numeric_value_raises(self, config_dir: Path) -> None:
        """Type errors in values are wrapped in ConfigError."""
        config_file = config_dir / "config.yaml"
        config_file.write_text("monitor:\n  workers: many\n")

        with pytest.raises(ConfigError, match="Invalid configuration value"):
            load_config(str(config_file))

    def test_endpoint_entry_requires_url(self, config_dir: Path) -> None:
        """Seed endpoints without url are rejected."""
        config_file = config_dir / "config.yaml"
        config_file.write_text("endpoints:\n  - interval: 10\n")

        with pytest.raises(ConfigError, match="missing 'url'"):
            load_config(str(config_file))

    def test_endpoints_must_be_list(self, config_dir: Path) -> None:
        """endpoints section must be a list."""
        config_file = config_dir / "config.yaml"
        config_file.write_text("endpoints:\n  url: http://example.com\n")

        with pytest.raises(ConfigError, match="must be a list"):
            load_config(str(config_file))

    def test_expands_home_in_db_path(self, config_dir: Path) -> None:
        """A leading ~ in database.path is expanded."""
        config_file = config_dir / "config.yaml"
        config_file.write_text("database:\n  path: ~/monty.db\n")

        config = load_config(str(config_file))

        assert config.database.path == str(Path.home() / "monty.db")


class TestEnvOverrides:
    """Tests for environment variable overrides."""

    def test_overrides_apply_without_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Environment variables override defaults."""
        monkeypatch.setenv("MONTY_MONITOR_WORKERS", "2")
        monkeypatch.setenv("MONTY_API_PORT", "9090")
        monkeypatch.setenv("MONTY_API_ENABLED", "false")
        monkeypatch.setenv("MONTY_DB_PATH", str(tmp_path / "env.db"))
        monkeypatch.setenv("MONTY_DB_RETENTION_DAYS", "3")

        config = load_config(None)

        assert config.monitor.workers == 2
        assert config.api.port == 9090
        assert config.api.enabled is False
        assert config.database.path == str(tmp_path / "env.db")
        assert config.database.retention_days == 3

    def test_overrides_take_precedence_over_file(
        self, monkeypatch: pytest.MonkeyPatch, config_dir: Path, valid_config_content: str
    ) -> None:
        """Environment wins over values from the YAML file."""
        config_file = config_dir / "config.yaml"
        config_file.write_text(valid_config_content)
        monkeypatch.setenv("MONTY_API_PORT", "7000")

        config = load_config(str(config_file))

        assert config.api.port == 7000
        assert config.monitor.workers == 4

    def test_invalid_numeric_override_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Non-numeric override is a ConfigError."""
        monkeypatch.setenv("MONTY_API_PORT", "eighty")

        with pytest.raises(ConfigError, match="environment override"):
            load_config(None)
