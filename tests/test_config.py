"""Unit tests for config.py - Configuration management."""

import os
import pytest
from unittest.mock import patch

import config
from config import (
    DatabaseConfig,
    ControllerConfig,
    SSHConfig,
    APIConfig,
    Config,
    load_config,
    get_config,
    reset_config,
)


class TestDatabaseConfig:
    """Tests for DatabaseConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = DatabaseConfig()
        assert cfg.host == "localhost"
        assert cfg.port == 5432
        assert cfg.database == "ssh_provider"
        assert cfg.user == "provider"
        assert cfg.password == ""
        assert cfg.min_pool_size == 5
        assert cfg.max_pool_size == 20

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "DB_HOST": "envhost",
            "DB_PORT": "5434",
            "DB_NAME": "envdb",
            "DB_USER": "envuser",
            "DB_PASSWORD": "envpassword",
            "DB_MIN_POOL_SIZE": "3",
            "DB_MAX_POOL_SIZE": "15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = DatabaseConfig.from_env()
            assert cfg.host == "envhost"
            assert cfg.port == 5434
            assert cfg.database == "envdb"
            assert cfg.user == "envuser"
            assert cfg.password == "envpassword"
            assert cfg.min_pool_size == 3
            assert cfg.max_pool_size == 15

    def test_from_env_missing_password_raises(self):
        """Test that missing password raises ValueError."""
        env_vars = {
            "DB_HOST": "localhost",
            "DB_PASSWORD": "",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            with pytest.raises(ValueError) as exc_info:
                DatabaseConfig.from_env()
            assert "DB_PASSWORD" in str(exc_info.value)

    def test_password_not_in_repr(self):
        """Test that password is not exposed in repr."""
        cfg = DatabaseConfig(password="secret123")
        assert "secret123" not in repr(cfg)

    def test_dsn_omits_password(self):
        cfg = DatabaseConfig(host="db", port=5433, password="secret123")
        assert cfg.dsn == "postgresql://provider@db:5433/ssh_provider"

    def test_invalid_pool_size(self):
        with pytest.raises(ValueError, match="pool size"):
            DatabaseConfig(min_pool_size=10, max_pool_size=5)

    def test_non_integer_port(self):
        env_vars = {"DB_PASSWORD": "pw", "DB_PORT": "abc"}
        with patch.dict(os.environ, env_vars, clear=True):
            with pytest.raises(ValueError, match="DB_PORT must be an integer"):
                DatabaseConfig.from_env()


class TestControllerConfig:
    """Tests for ControllerConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = ControllerConfig()
        assert cfg.resync_interval == 10
        assert cfg.poll_interval == 300
        assert cfg.max_concurrent_reconciles == 5
        assert cfg.reconcile_timeout == 60
        assert cfg.backoff_base_delay == 60
        assert cfg.backoff_max_delay == 3600
        assert cfg.backoff_jitter_factor == 0.1

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "RESYNC_INTERVAL": "5",
            "POLL_INTERVAL": "120",
            "MAX_CONCURRENT_RECONCILES": "8",
            "RECONCILE_TIMEOUT": "30",
            "BACKOFF_BASE_DELAY": "90",
            "BACKOFF_MAX_DELAY": "5400",
            "BACKOFF_JITTER_FACTOR": "0.15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = ControllerConfig.from_env()
            assert cfg.resync_interval == 5
            assert cfg.poll_interval == 120
            assert cfg.max_concurrent_reconciles == 8
            assert cfg.reconcile_timeout == 30
            assert cfg.backoff_base_delay == 90
            assert cfg.backoff_max_delay == 5400
            assert cfg.backoff_jitter_factor == 0.15

    def test_from_env_defaults(self):
        """Test that defaults are used when env vars not set."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = ControllerConfig.from_env()
            assert cfg.resync_interval == 10
            assert cfg.max_concurrent_reconciles == 5

    @pytest.mark.parametrize(
        "overrides",
        [
            {"resync_interval": 0},
            {"poll_interval": -1},
            {"reconcile_timeout": 0},
            {"backoff_base_delay": 0},
            {"max_concurrent_reconciles": 0},
            {"backoff_base_delay": 120, "backoff_max_delay": 60},
            {"backoff_jitter_factor": 1.5},
        ],
    )
    def test_rejects_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            ControllerConfig(**overrides)

    def test_fractional_intervals(self):
        env_vars = {"RESYNC_INTERVAL": "0.5", "RECONCILE_TIMEOUT": "2.5"}
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = ControllerConfig.from_env()
            assert cfg.resync_interval == 0.5
            assert cfg.reconcile_timeout == 2.5

    def test_empty_variable_uses_default(self):
        with patch.dict(os.environ, {"POLL_INTERVAL": ""}, clear=True):
            assert ControllerConfig.from_env().poll_interval == 300


class TestSSHConfig:
    """Tests for SSHConfig class."""

    def test_default_values(self):
        cfg = SSHConfig()
        assert cfg.connect_timeout == 30
        assert cfg.command_timeout == 60
        assert cfg.known_hosts is None

    def test_from_env(self):
        env_vars = {
            "SSH_CONNECT_TIMEOUT": "5",
            "SSH_COMMAND_TIMEOUT": "10",
            "SSH_KNOWN_HOSTS": "/etc/ssh/known_hosts",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = SSHConfig.from_env()
            assert cfg.connect_timeout == 5
            assert cfg.command_timeout == 10
            assert cfg.known_hosts == "/etc/ssh/known_hosts"

    def test_from_env_empty_known_hosts(self):
        """An empty SSH_KNOWN_HOSTS disables host key checking."""
        with patch.dict(os.environ, {"SSH_KNOWN_HOSTS": ""}, clear=True):
            assert SSHConfig.from_env().known_hosts is None

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError, match="positive"):
            SSHConfig(connect_timeout=0)


class TestAPIConfig:
    """Tests for APIConfig class."""

    def test_default_values(self):
        """Test default configuration values."""
        cfg = APIConfig()
        assert cfg.host == "0.0.0.0"
        assert cfg.port == 8000
        assert cfg.log_level == "INFO"
        assert cfg.cors_enabled is False
        assert cfg.cors_origins == ["*"]

    def test_from_env(self):
        """Test loading configuration from environment variables."""
        env_vars = {
            "API_HOST": "0.0.0.0",
            "API_PORT": "3000",
            "LOG_LEVEL": "DEBUG",
            "CORS_ENABLED": "true",
            "CORS_ORIGINS": "http://localhost:3000,https://example.com",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = APIConfig.from_env()
            assert cfg.port == 3000
            assert cfg.log_level == "DEBUG"
            assert cfg.cors_enabled is True
            assert cfg.cors_origins == ["http://localhost:3000", "https://example.com"]

    def test_from_env_no_cors_origins(self):
        """Test default CORS origins when not specified."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = APIConfig.from_env()
            assert cfg.cors_origins == ["*"]

    def test_cors_origins_are_trimmed(self):
        env_vars = {"CORS_ORIGINS": " http://a.example , ,http://b.example"}
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = APIConfig.from_env()
            assert cfg.cors_origins == ["http://a.example", "http://b.example"]

    @pytest.mark.parametrize("value", ["1", "yes", "TRUE", "on"])
    def test_cors_enabled_truthy_values(self, value):
        with patch.dict(os.environ, {"CORS_ENABLED": value}, clear=True):
            assert APIConfig.from_env().cors_enabled is True


class TestConfig:
    """Tests for main Config class."""

    def test_default(self):
        """Test default configuration."""
        cfg = Config.default()
        assert isinstance(cfg.database, DatabaseConfig)
        assert isinstance(cfg.controller, ControllerConfig)
        assert isinstance(cfg.ssh, SSHConfig)
        assert isinstance(cfg.api, APIConfig)

    def test_from_env(self):
        """Test loading full configuration from environment."""
        env_vars = {
            "DB_HOST": "testhost",
            "DB_PASSWORD": "testpass",
            "RESYNC_INTERVAL": "30",
            "SSH_CONNECT_TIMEOUT": "7",
            "API_PORT": "9000",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = Config.from_env()
            assert cfg.database.host == "testhost"
            assert cfg.controller.resync_interval == 30
            assert cfg.ssh.connect_timeout == 7
            assert cfg.api.port == 9000


class TestConfigSingleton:
    """Tests for config singleton functions."""

    def test_get_config_loads_if_none(self):
        """Test get_config loads config if not loaded."""
        with patch.dict(os.environ, {"DB_PASSWORD": "testpass"}, clear=False):
            cfg = get_config()
            assert isinstance(cfg, Config)

    def test_singleton_returns_same_instance(self):
        """Test that singleton returns same instance."""
        with patch.dict(os.environ, {"DB_PASSWORD": "testpass"}, clear=False):
            cfg1 = load_config()
            cfg2 = get_config()
            assert cfg1 is cfg2

    def test_reset_config(self):
        """Test reset_config clears the singleton."""
        with patch.dict(os.environ, {"DB_PASSWORD": "testpass"}, clear=False):
            cfg1 = load_config()
            reset_config()
            assert config.config is None
            cfg2 = load_config()
            assert cfg1 is not cfg2
