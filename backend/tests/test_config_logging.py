"""
Tests for configuration, logging context, Sentry filtering and
internal API key authentication.

Run with: pytest tests/test_config_logging.py -v
"""

import json
import logging

import pytest

from config import Settings, get_settings
from logging_config import (
    JSONFormatter,
    RequestContextFilter,
    set_request_context,
    clear_request_context,
    get_request_context,
    get_request_id,
)
from middleware.internal_auth import validate_internal_key
from reconciliation.errors import ReconciliationError, OverAllocation, ProviderUnavailable, ERROR_TYPES
from sentry_integration import before_send, redact


class TestSettings:
    """Test settings parsing and validation."""

    def test_test_environment_defaults(self):
        settings = get_settings()
        assert settings.uses_memory_ledger
        assert settings.RECON_AUTO_ACCEPT_THRESHOLD == 0.92
        assert settings.validate_production_config() == []

    def test_key_rotation(self, monkeypatch):
        monkeypatch.setenv("INTERNAL_API_KEYS", "old-key, new-key ,")
        settings = Settings()
        assert settings.internal_api_keys == [
            "test-internal-key-0123456789abcdef0123", "old-key", "new-key"
        ]

    def test_production_rejects_memory_ledger(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        errors = Settings().validate_production_config()
        assert "LEDGER_BACKEND cannot be 'memory' in production" in errors
        assert "DATABASE_URL is required" in errors

    def test_bad_matching_weights_are_reported(self, monkeypatch):
        monkeypatch.setenv("RECON_WEIGHT_DATE", "0.4")
        errors = Settings().validate_production_config()
        assert any("weights must sum to 1.0" in error for error in errors)

    def test_production_get_settings_raises(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        get_settings.cache_clear()
        with pytest.raises(ValueError):
            get_settings()

    def test_database_url_from_components(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "")
        monkeypatch.setenv("POSTGRES_HOST", "db")
        monkeypatch.setenv("POSTGRES_USER", "recon")
        monkeypatch.setenv("POSTGRES_PASSWORD", "pw")
        assert Settings().get_database_url() == "postgresql+asyncpg://recon:pw@db:5432/reconciliation"

    def test_production_cors_has_no_localhost(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("CORS_ORIGINS", "https://books.example.com")
        assert Settings().cors_origins_list == ["https://books.example.com"]


class TestLoggingContext:
    """Test request context propagation into log records."""

    def make_record(self, **extra):
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "hello", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def teardown_method(self):
        clear_request_context()

    def test_filter_adds_context(self):
        set_request_context(request_id="req-1", account_id="acc-1")
        record = self.make_record()

        RequestContextFilter().filter(record)

        assert record.request_id == "req-1"
        assert record.account_id == "acc-1"
        assert record.item_id is None

    def test_explicit_extra_wins(self):
        set_request_context(item_id="from-context")
        record = self.make_record(item_id="from-extra")

        RequestContextFilter().filter(record)

        assert record.item_id == "from-extra"

    def test_clear(self):
        set_request_context(request_id="req-1")
        clear_request_context()
        assert get_request_id() is None

    def test_json_formatter(self):
        record = self.make_record(event="reconciliation.allocation_created", details={"amount": "1.00"})
        data = json.loads(JSONFormatter().format(record))
        assert data["message"] == "hello"
        assert data["service"] == "reconciliation-engine"
        assert data["event"] == "reconciliation.allocation_created"
        assert data["extra"] == {"details": {"amount": "1.00"}}
        assert data["context"] == {"request_id": None, "account_id": None, "item_id": None}

    def test_json_formatter_includes_filtered_context(self):
        set_request_context(request_id="req-9")
        record = self.make_record()
        RequestContextFilter().filter(record)
        data = json.loads(JSONFormatter().format(record))
        assert data["context"]["request_id"] == "req-9"
        assert "extra" not in data

    def test_get_request_context(self):
        set_request_context(account_id="acc-1", item_id="item-1")
        assert get_request_context() == {"request_id": None, "account_id": "acc-1", "item_id": "item-1"}


class TestSentryFiltering:

    def teardown_method(self):
        clear_request_context()

    def test_redacts_nested_secrets(self):
        data = redact({
            "x-internal-api-key": "secret",
            "nested": {"password": "pw", "amount": "10.00"},
            "items": [{"token": "t"}]
        })
        assert data["x-internal-api-key"] == "[REDACTED]"
        assert data["nested"] == {"password": "[REDACTED]", "amount": "10.00"}
        assert data["items"] == [{"token": "[REDACTED]"}]

    def test_before_send_redacts_and_tags(self):
        set_request_context(item_id="item-1")
        event = {"request": {"headers": {"Authorization": "Bearer x"}}, "extra": {"database_url": "pg://"}}
        filtered = before_send(event, {})
        assert filtered["request"]["headers"]["Authorization"] == "[REDACTED]"
        assert filtered["extra"]["database_url"] == "[REDACTED]"
        assert filtered["tags"] == {"item_id": "item-1"}

    def test_domain_errors_are_dropped(self):
        error = OverAllocation("too much")
        assert before_send({}, {"exc_info": (OverAllocation, error, None)}) is None

    def test_unavailable_ledger_is_reported(self):
        error = ProviderUnavailable("down")
        assert before_send({}, {"exc_info": (ProviderUnavailable, error, None)}) is not None


class TestInternalAuth:

    def test_valid_key(self):
        assert validate_internal_key("test-internal-key-0123456789abcdef0123")

    def test_invalid_key(self):
        assert not validate_internal_key("nope")
        assert not validate_internal_key("")


class TestErrors:

    def test_every_kind_is_registered(self):
        assert set(ERROR_TYPES) == {
            "InvalidStateTransition", "InvalidAmount", "OverAllocation", "CurrencyMismatch",
            "DirectionMismatch", "NotFound", "Conflict", "ProviderUnavailable"
        }
        assert all(issubclass(cls, ReconciliationError) for cls in ERROR_TYPES.values())

    def test_to_dict(self):
        error = ERROR_TYPES["Conflict"]("changed", {"document_id": "doc-1"})
        assert error.to_dict() == {"kind": "Conflict", "message": "changed", "details": {"document_id": "doc-1"}}
        assert error.http_status == 409
