"""
Telemetry module for structured logging and observability.

This module provides:
- JSONFormatter for structured JSON log output
- TelemetryService for centralized logging and metrics
- Integration with OpenTelemetry for distributed tracing
"""

from telemetry.service import (
    JSONFormatter,
    TelemetryService,
    create_span,
    get_correlation_id,
    get_telemetry_service,
    initialize_telemetry,
    record_metric,
    reset_correlation_id,
    set_correlation_id,
)

__all__ = [
    "JSONFormatter",
    "TelemetryService",
    "create_span",
    "get_correlation_id",
    "get_telemetry_service",
    "initialize_telemetry",
    "record_metric",
    "reset_correlation_id",
    "set_correlation_id",
]
