"""
Observability helpers for the Exam Access Layer.
Ties structured business-event logs to metrics and the active span.
"""

from typing import Optional, Any

from opentelemetry import trace

from .logging import get_logger, request_id_var, set_request_id, set_user_context
from .metrics import MetricsCollector


def add_span_event(name: str, **attributes: Any):
    """Attach an event to the current span when one is recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        span.add_event(name, {k: str(v) for k, v in attributes.items() if v is not None})


class ObservabilityManager:
    """Centralized observability manager for a service."""

    def __init__(self, service_name: str, metrics: MetricsCollector):
        self.service_name = service_name
        self.metrics = metrics
        self.logger = get_logger(f"{service_name}.observability")

    def trace_request(self, request_id: Optional[str] = None,
                      user_id: Optional[str] = None,
                      exam_category: Optional[str] = None) -> str:
        """Bind user context to the current request for log correlation."""
        if request_id or request_id_var.get() is None:
            set_request_id(request_id)
        set_user_context(user_id, exam_category)
        return request_id_var.get()

    def log_error(self, error_type: str, error_message: str, **kwargs):
        """Log error with full context."""
        self.logger.error(
            "Error occurred",
            error_type=error_type,
            error_message=error_message,
            **kwargs
        )
        self.metrics.record_error(error_type)
        add_span_event("error", error_type=error_type, error_message=error_message)

    def log_business_event(self, event_type: str, **kwargs):
        """Log business event with full context."""
        self.logger.info(
            "Business event",
            event_type=event_type,
            **kwargs
        )
        self.metrics.record_business_event(event_type)
        add_span_event("business_event", event_type=event_type, **kwargs)


def get_observability_manager(service_name: str, metrics: MetricsCollector) -> ObservabilityManager:
    """Create an observability manager bound to a metrics collector."""
    return ObservabilityManager(service_name, metrics)
