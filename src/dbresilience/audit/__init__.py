"""Audit records written to the system log."""

from .health_events import HealthEvent, HealthEventRecorder, HealthEventStatus

__all__ = ["HealthEvent", "HealthEventRecorder", "HealthEventStatus"]
