"""
Structured logging, tracing and metrics for the session repository.

Log lines are JSON objects carrying the correlation id of the unit of work
that emitted them (a sweep cycle, a keyspace notification, or a request in
an embedding web layer). Metrics are logged at DEBUG and accumulated in
process so health probes and tests can read totals back. Tracing is
OpenTelemetry and only switches on when an OTLP endpoint is configured and
the ``otel`` extra is installed.
"""

import logging
import json
import sys
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional, Dict
from contextvars import ContextVar

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


class JSONFormatter(logging.Formatter):
    """
    Render log records as one JSON object per line.

    Fields: timestamp (UTC, ``Z`` suffix), level, logger, message and
    correlation_id, followed by the source location and whatever the caller
    passed as ``extra={"extra_data": {...}}``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": correlation_id_var.get(""),
        }

        if record.module:
            entry["module"] = record.module
        if record.funcName and record.funcName != "<module>":
            entry["function"] = record.funcName
        if record.lineno:
            entry["line"] = record.lineno

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry.update(extra_data)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack_trace"] = record.stack_info

        return json.dumps(entry, default=str)


class TelemetryService:
    """
    Owns the process-wide logging setup, the optional tracer and the
    metric totals.

    Args:
        settings: Anything exposing ``log_level``, ``otel_endpoint`` and
            ``otel_service_name``; usually ``config.settings.Settings``.
    """

    def __init__(self, settings: Optional[Any] = None):
        self.settings = settings
        self.tracer = None
        self._logger = logging.getLogger("telemetry")
        self._totals: Dict[str, float] = defaultdict(float)
        self._setup_logging()
        self._setup_tracing()

    def _setup_logging(self) -> None:
        level_name = getattr(self.settings, "log_level", None) or "INFO"
        level = getattr(logging, level_name.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        # One stdout handler, replacing whatever was configured before
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)

        self._logger.info("Telemetry initialized", extra={
            "extra_data": {"log_level": level_name}
        })

    def _setup_tracing(self) -> None:
        endpoint = getattr(self.settings, "otel_endpoint", None)
        if not endpoint:
            self._logger.debug("No OTLP endpoint configured, tracing disabled")
            return

        try:
            from opentelemetry import trace
            from opentelemetry.sdk.trace import TracerProvider
            from opentelemetry.sdk.trace.export import BatchSpanProcessor
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            from opentelemetry.sdk.resources import Resource, SERVICE_NAME

            service_name = getattr(self.settings, "otel_service_name", "session-repository")

            provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: service_name}))
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
            trace.set_tracer_provider(provider)
            self.tracer = trace.get_tracer(service_name)

            self._logger.info("Tracing exports to OTLP endpoint", extra={
                "extra_data": {"otel_endpoint": endpoint, "service_name": service_name}
            })
        except ImportError as e:
            self._logger.warning(
                "OpenTelemetry is not installed, tracing disabled",
                extra={"extra_data": {"error": str(e)}}
            )
        except Exception as e:
            self._logger.error(
                "Tracing setup failed, continuing without spans",
                extra={"extra_data": {"error": str(e)}}
            )

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Add ``value`` to the running total for ``name`` and log the sample.

        Args:
            name: Metric name, e.g. ``session_sweep_expired``
            value: Sample value
            tags: Optional dimensions, logged with the sample only
        """
        self._totals[name] += value

        sample: Dict[str, Any] = {"metric_name": name, "metric_value": value}
        if tags:
            sample["tags"] = tags

        self._logger.debug(f"Metric: {name}={value}", extra={"extra_data": sample})

    def metric_totals(self) -> Dict[str, float]:
        """Totals per metric name since this service was created."""
        return dict(self._totals)

    def create_span(self, name: str, attributes: Optional[Dict[str, Any]] = None):
        """
        Start a span, or return a no-op stand-in when tracing is off.

        Use as a context manager; the yielded object supports
        ``set_attribute`` and ``record_exception`` either way.
        """
        if self.tracer is None:
            return _NoOpSpan()
        return _AttributedSpan(self.tracer.start_as_current_span(name), attributes or {})


class _AttributedSpan:
    """Enters a tracer span and stamps the initial attributes on it."""

    def __init__(self, span_context, attributes: Dict[str, Any]):
        self._span_context = span_context
        self._attributes = attributes

    def __enter__(self):
        span = self._span_context.__enter__()
        for key, value in self._attributes.items():
            span.set_attribute(key, value)
        return span

    def __exit__(self, exc_type, exc_val, exc_tb):
        return self._span_context.__exit__(exc_type, exc_val, exc_tb)


class _NoOpSpan:

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def record_exception(self, exception: Exception) -> None:
        pass


_telemetry_service: Optional[TelemetryService] = None


def get_telemetry_service() -> Optional[TelemetryService]:
    """The process-wide service, or None before initialize_telemetry()."""
    return _telemetry_service


def initialize_telemetry(settings: Optional[Any] = None) -> TelemetryService:
    """
    Create the process-wide telemetry service, replacing any earlier one.

    Args:
        settings: Settings for log level and tracing

    Returns:
        The new service
    """
    global _telemetry_service
    _telemetry_service = TelemetryService(settings)
    return _telemetry_service


def record_metric(name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
    """Record through the process-wide service; no-op before initialization."""
    if _telemetry_service is not None:
        _telemetry_service.record_metric(name, value, tags)


def create_span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """Span through the process-wide service; no-op before initialization."""
    if _telemetry_service is not None:
        return _telemetry_service.create_span(name, attributes)
    return _NoOpSpan()


def set_correlation_id(correlation_id: str):
    """
    Tag subsequent log lines in this context with ``correlation_id``.

    Returns:
        The context token to pass to reset_correlation_id()
    """
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str:
    return correlation_id_var.get("")
