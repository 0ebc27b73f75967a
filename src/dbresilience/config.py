"""
Resilience Configuration Management

Plain configuration values for the database resilience layer: connection pool
sizing, retry policy, health checking, reconnection and query logging. Values
can come from defaults, a YAML file, or environment variables (optionally
loaded from a ``.env`` file).
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from dbresilience.exceptions import ConfigValidationError

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DatabaseSettings:
    """Connection target and pool settings."""

    url: str = "postgresql://localhost:5432/postgres"

    # Connection pool settings
    max_connections: int = 10
    connection_timeout: float = 30.0  # Seconds to wait for a pooled connection
    max_waiting_clients: int = 50
    idle_timeout: float = 60.0  # Seconds before an idle connection is closed

    def validate(self) -> None:
        """Validate database configuration."""
        if not self.url.startswith(("postgresql://", "postgres://")):
            raise ConfigValidationError("url", str, self.url, "must be a postgresql:// URL")

        if self.max_connections <= 0:
            raise ConfigValidationError(
                "max_connections", int, self.max_connections, "must be positive"
            )

        if self.connection_timeout <= 0:
            raise ConfigValidationError(
                "connection_timeout", float, self.connection_timeout, "must be positive"
            )


@dataclass
class RetrySettings:
    """Retry settings for database operations."""

    max_retries: int = 3
    retry_delay: float = 1.0  # Base delay, doubled on every attempt
    jitter_max: float = 0.1  # Upper bound of the random delay added to each backoff

    def validate(self) -> None:
        """Validate retry configuration."""
        if self.max_retries < 1:
            raise ConfigValidationError("max_retries", int, self.max_retries, "must be at least 1")

        if self.retry_delay < 0:
            raise ConfigValidationError(
                "retry_delay", float, self.retry_delay, "must be non-negative"
            )

        if self.jitter_max < 0:
            raise ConfigValidationError("jitter_max", float, self.jitter_max, "must be non-negative")


@dataclass
class HealthCheckSettings:
    """Periodic health check settings."""

    enabled: bool = True
    interval: float = 300.0  # 5 minutes
    max_consecutive_failures: int = 3
    staleness_window: float = 600.0  # Cached health older than this is treated as unknown
    probe_timeout: float = 5.0

    def validate(self) -> None:
        """Validate health check configuration."""
        if self.interval <= 0:
            raise ConfigValidationError("interval", float, self.interval, "must be positive")

        if self.max_consecutive_failures < 1:
            raise ConfigValidationError(
                "max_consecutive_failures",
                int,
                self.max_consecutive_failures,
                "must be at least 1",
            )

        if self.probe_timeout <= 0:
            raise ConfigValidationError(
                "probe_timeout", float, self.probe_timeout, "must be positive"
            )


@dataclass
class ReconnectSettings:
    """Reconnection settings for the connection manager."""

    max_reconnect_attempts: int = 10
    base_reconnect_delay: float = 5.0
    backoff_factor: float = 1.5
    staleness_window: float = 300.0  # Cached connectivity older than this is treated as down

    def validate(self) -> None:
        """Validate reconnection configuration."""
        if self.max_reconnect_attempts < 0:
            raise ConfigValidationError(
                "max_reconnect_attempts",
                int,
                self.max_reconnect_attempts,
                "must be non-negative",
            )

        if self.base_reconnect_delay < 0:
            raise ConfigValidationError(
                "base_reconnect_delay", float, self.base_reconnect_delay, "must be non-negative"
            )

        if self.backoff_factor < 1.0:
            raise ConfigValidationError(
                "backoff_factor", float, self.backoff_factor, "must be at least 1.0"
            )


@dataclass
class QueryLoggingSettings:
    """Logging verbosity flags."""

    log_queries: bool = False
    log_errors: bool = True
    log_slow_queries: bool = True
    slow_query_threshold: float = 1.0  # Seconds
    level: str = "INFO"
    format: str = "json"

    def validate(self) -> None:
        """Validate logging configuration."""
        if self.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigValidationError("level", str, self.level, "must be a logging level name")

        if self.format not in ("json", "text"):
            raise ConfigValidationError("format", str, self.format, "must be 'json' or 'text'")


@dataclass
class ResilienceConfig:
    """Top-level configuration for the database resilience layer."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    health_check: HealthCheckSettings = field(default_factory=HealthCheckSettings)
    reconnect: ReconnectSettings = field(default_factory=ReconnectSettings)
    logging: QueryLoggingSettings = field(default_factory=QueryLoggingSettings)

    def validate(self) -> None:
        """Validate every section."""
        self.database.validate()
        self.retry.validate()
        self.health_check.validate()
        self.reconnect.validate()
        self.logging.validate()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResilienceConfig":
        """
        Create configuration from a nested dictionary.

        Unknown sections are ignored; unknown keys inside a known section raise
        ``TypeError`` from the dataclass constructor.
        """
        return cls(
            database=DatabaseSettings(**data.get("database", {})),
            retry=RetrySettings(**data.get("retry", {})),
            health_check=HealthCheckSettings(**data.get("health_check", {})),
            reconnect=ReconnectSettings(**data.get("reconnect", {})),
            logging=QueryLoggingSettings(**data.get("logging", {})),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ResilienceConfig":
        """
        Load configuration from a YAML file.

        Args:
            path: Path to the YAML file

        Returns:
            Validated ResilienceConfig instance
        """
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        data = yaml.safe_load(config_path.read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file must contain a mapping: {config_path}")

        config = cls.from_dict(data)
        config.validate()
        logger.info(f"Loaded resilience configuration from {config_path}")
        return config

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "ResilienceConfig":
        """
        Create configuration from environment variables.

        Args:
            env_file: Optional ``.env`` file to load first (existing variables win)

        Returns:
            Validated ResilienceConfig instance
        """
        load_dotenv(env_file)

        development = os.getenv("ENVIRONMENT", "production").lower() == "development"

        config = cls(
            database=DatabaseSettings(
                url=os.getenv("DATABASE_URL", DatabaseSettings.url),
                max_connections=int(os.getenv("DB_MAX_CONNECTIONS", "10")),
                connection_timeout=float(os.getenv("DB_CONNECTION_TIMEOUT", "30.0")),
                max_waiting_clients=int(os.getenv("DB_MAX_WAITING_CLIENTS", "50")),
                idle_timeout=float(os.getenv("DB_IDLE_TIMEOUT", "60.0")),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("DB_MAX_RETRIES", "3")),
                retry_delay=float(os.getenv("DB_RETRY_DELAY", "1.0")),
                jitter_max=float(os.getenv("DB_RETRY_JITTER_MAX", "0.1")),
            ),
            health_check=HealthCheckSettings(
                enabled=_env_bool("DB_HEALTH_CHECK_ENABLED", True),
                interval=float(os.getenv("DB_HEALTH_CHECK_INTERVAL", "300.0")),
                max_consecutive_failures=int(os.getenv("DB_HEALTH_MAX_FAILURES", "3")),
                staleness_window=float(os.getenv("DB_HEALTH_STALENESS_WINDOW", "600.0")),
                probe_timeout=float(os.getenv("DB_PROBE_TIMEOUT", "5.0")),
            ),
            reconnect=ReconnectSettings(
                max_reconnect_attempts=int(os.getenv("DB_MAX_RECONNECT_ATTEMPTS", "10")),
                base_reconnect_delay=float(os.getenv("DB_RECONNECT_DELAY", "5.0")),
                staleness_window=float(os.getenv("DB_CONNECTION_STALENESS_WINDOW", "300.0")),
            ),
            logging=QueryLoggingSettings(
                log_queries=_env_bool("DB_LOG_QUERIES", development),
                log_errors=_env_bool("DB_LOG_ERRORS", True),
                log_slow_queries=_env_bool("DB_LOG_SLOW_QUERIES", True),
                slow_query_threshold=float(os.getenv("DB_SLOW_QUERY_THRESHOLD", "1.0")),
                level=os.getenv("LOG_LEVEL", "INFO"),
                format=os.getenv("LOG_FORMAT", "json"),
            ),
        )
        config.validate()
        return config
