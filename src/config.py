"""
Configuration module for the SSH provider.

Every setting is read from an environment variable and falls back to the
dataclass default. Invalid values fail at startup rather than on the first
reconcile.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "ssh_provider"
    user: str = "provider"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    def __post_init__(self):
        if self.min_pool_size < 1 or self.max_pool_size < self.min_pool_size:
            raise ValueError(
                f"Invalid pool size {self.min_pool_size}..{self.max_pool_size}"
            )

    @property
    def dsn(self) -> str:
        """Connection string without the password."""
        return f"postgresql://{self.user}@{self.host}:{self.port}/{self.database}"

    @classmethod
    def from_env(cls):
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=_env_int("DB_PORT", 5432),
            database=os.getenv("DB_NAME", "ssh_provider"),
            user=os.getenv("DB_USER", "provider"),
            password=password,
            min_pool_size=_env_int("DB_MIN_POOL_SIZE", 5),
            max_pool_size=_env_int("DB_MAX_POOL_SIZE", 20),
        )


@dataclass
class ControllerConfig:
    """
    Scheduling of reconcile passes.

    A converged resource is checked again every ``poll_interval`` seconds.
    A failing one is retried after ``backoff_base_delay * 2**(n-1)`` seconds
    for its n-th consecutive failure, capped at ``backoff_max_delay`` and
    stretched by up to ``backoff_jitter_factor``.
    """

    resync_interval: float = 10  # seconds between scans for due resources
    poll_interval: int = 300
    max_concurrent_reconciles: int = 5
    reconcile_timeout: float = 60  # bound on the remote part of one pass

    backoff_base_delay: int = 60
    backoff_max_delay: int = 3600
    backoff_jitter_factor: float = 0.1

    def __post_init__(self):
        for name in (
            "resync_interval",
            "poll_interval",
            "reconcile_timeout",
            "backoff_base_delay",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be at least 1")
        if self.backoff_max_delay < self.backoff_base_delay:
            raise ValueError(
                f"backoff_max_delay ({self.backoff_max_delay}) is below "
                f"backoff_base_delay ({self.backoff_base_delay})"
            )
        if not 0 <= self.backoff_jitter_factor <= 1:
            raise ValueError("backoff_jitter_factor must be between 0 and 1")

    @classmethod
    def from_env(cls):
        return cls(
            resync_interval=_env_float("RESYNC_INTERVAL", 10),
            poll_interval=_env_int("POLL_INTERVAL", 300),
            max_concurrent_reconciles=_env_int("MAX_CONCURRENT_RECONCILES", 5),
            reconcile_timeout=_env_float("RECONCILE_TIMEOUT", 60),
            backoff_base_delay=_env_int("BACKOFF_BASE_DELAY", 60),
            backoff_max_delay=_env_int("BACKOFF_MAX_DELAY", 3600),
            backoff_jitter_factor=_env_float("BACKOFF_JITTER_FACTOR", 0.1),
        )


@dataclass
class SSHConfig:
    """Remote channel configuration."""

    connect_timeout: float = 30
    command_timeout: float = 60
    known_hosts: Optional[str] = None  # None disables host key checking

    def __post_init__(self):
        if self.connect_timeout <= 0 or self.command_timeout <= 0:
            raise ValueError("SSH timeouts must be positive")

    @classmethod
    def from_env(cls):
        return cls(
            connect_timeout=_env_float("SSH_CONNECT_TIMEOUT", 30),
            command_timeout=_env_float("SSH_COMMAND_TIMEOUT", 60),
            known_hosts=os.getenv("SSH_KNOWN_HOSTS") or None,
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_enabled: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls):
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",")]
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=_env_int("API_PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_enabled=_env_bool("CORS_ENABLED"),
            cors_origins=[o for o in origins if o] or ["*"],
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    ssh: SSHConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            ssh=SSHConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            ssh=SSHConfig(),
            api=APIConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration once; later calls return the same object."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Forget the loaded configuration so the next call reloads it."""
    global config
    config = None
