"""
Unit tests for shared errors, configuration and metrics.
"""

import pytest

from shared.config import get_config
from shared.errors import (
    AccessDenied, AccessLayerException, AuthorizationError, ConcurrentModification, ExternalServiceError,
    MalformedRecord, PersistenceUnavailable,
)
from shared.metrics import MetricsCollector


class TestErrors:
    """Error codes and status mapping."""

    def test_to_response(self):
        error = AccessDenied(details={"exam_id": "rm-paper-1"})

        response = error.to_response()

        assert response.code == "ACCESS_DENIED"
        assert response.message == "No access to this exam"
        assert response.details == {"exam_id": "rm-paper-1"}
        assert response.trace_id is None

    def test_status_codes(self):
        assert AuthorizationError().status_code == 403
        assert PersistenceUnavailable().status_code == 503
        assert ConcurrentModification().status_code == 409

    def test_malformed_record_is_unavailable(self):
        error = MalformedRecord()

        assert isinstance(error, PersistenceUnavailable)
        assert error.code == "MALFORMED_RECORD"
        assert error.status_code == 503

    def test_external_service_message(self):
        error = ExternalServiceError("paystack", "timed out")

        assert error.message == "paystack: timed out"
        assert error.code == "EXTERNAL_SERVICE_ERROR"

    def test_custom_code(self):
        error = AccessLayerException("REDIS_START_FAILED", "refused")

        assert str(error) == "refused"
        assert error.details == {}


class TestConfig:
    """Service configuration."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ACCESS_ADMIN_TOKEN", raising=False)
        monkeypatch.delenv("ACCESS_DEFAULT_MAX_ATTEMPTS", raising=False)

        config = get_config("access", 8010)

        assert config.service_name == "access"
        assert config.port == 8010
        assert config.default_max_attempts == 1
        assert config.payment_access_days == 90
        assert config.admin_token is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ACCESS_DEFAULT_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("ACCESS_STORE_BACKEND", "postgres")

        config = get_config("access", 8010)

        assert config.default_max_attempts == 3
        assert config.store_backend == "postgres"

    def test_keyword_overrides(self):
        assert get_config("access", 8010, admin_token="secret").admin_token == "secret"


class TestMetrics:
    """Metrics collectors."""

    def test_collectors_do_not_share_registries(self):
        first = MetricsCollector("access")
        second = MetricsCollector("access")

        first.increment_counter("access_grants_total", method="payment", outcome="persisted")

        labels = {"method": "payment", "outcome": "persisted"}
        assert first.registry.get_sample_value("access_grants_total", labels) == 1.0
        assert second.registry.get_sample_value("access_grants_total", labels) is None

    def test_unknown_counter_is_ignored(self):
        metrics = MetricsCollector("access")

        metrics.increment_counter("no_such_metric", outcome="x")

    def test_business_events(self):
        metrics = MetricsCollector("access")

        metrics.record_business_event("attempt_started")

        value = metrics.registry.get_sample_value(
            "business_events_total", {"event_type": "attempt_started", "service": "access"}
        )
        assert value == 1.0


@pytest.mark.parametrize("error_cls", [AccessDenied, AuthorizationError, PersistenceUnavailable])
def test_errors_render_without_details(error_cls):
    assert error_cls().to_response().details == {}
