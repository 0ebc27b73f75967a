"""
Monitoring Module

Structured logging with correlation IDs, OpenTelemetry trace context and
credential masking.
"""

from .logging import (
    ResilienceJSONFormatter,
    correlation_context,
    mask_dsn,
    setup_structured_logging,
)

__all__ = [
    "ResilienceJSONFormatter",
    "correlation_context",
    "mask_dsn",
    "setup_structured_logging",
]
