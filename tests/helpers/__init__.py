"""Test helper utilities for the resilience test suite."""

from tests.helpers.fakes import FakeDatabaseClient, FakeClock

__all__ = ["FakeDatabaseClient", "FakeClock"]
