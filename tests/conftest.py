"""Global pytest configuration and fixtures."""

# Third-party imports
import pytest

# Local imports
from dbresilience.config import HealthCheckSettings, ReconnectSettings, ResilienceConfig
from tests.helpers.fakes import FakeClock, FakeDatabaseClient


@pytest.fixture
def fake_client() -> FakeDatabaseClient:
    """Healthy in-memory database client."""
    return FakeDatabaseClient()


@pytest.fixture
def clock() -> FakeClock:
    """Manually advanced wall clock starting at a fixed time."""
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def health_settings() -> HealthCheckSettings:
    """Health check settings with short timings for tests."""
    return HealthCheckSettings(
        enabled=True,
        interval=0.05,
        max_consecutive_failures=3,
        staleness_window=600.0,
        probe_timeout=1.0,
    )


@pytest.fixture
def reconnect_settings() -> ReconnectSettings:
    """Reconnect settings with millisecond delays for tests."""
    return ReconnectSettings(
        max_reconnect_attempts=3,
        base_reconnect_delay=0.01,
        backoff_factor=1.5,
        staleness_window=300.0,
    )


@pytest.fixture
def resilience_config(health_settings, reconnect_settings) -> ResilienceConfig:
    """Complete configuration with fast timings."""
    config = ResilienceConfig(health_check=health_settings, reconnect=reconnect_settings)
    config.retry.retry_delay = 0.0
    config.retry.jitter_max = 0.0
    return config
