"""
Unit tests for the exception system.

Tests the error classes, the duplicate factory and correlation id handling.
"""

from unittest.mock import patch

import pytest

from query_gateway_core.exceptions import (
    AuthenticationError,
    BaseError,
    ConfigurationError,
    CredentialNotFoundError,
    DecryptionError,
    DuplicateError,
    ErrorCode,
    GatewayTimeoutError,
    MalformedResponseError,
    ParseWarning,
    RepositoryError,
    UpstreamProtocolError,
    ValidationError,
    clear_correlation_id,
    duplicate,
    get_correlation_id,
    set_correlation_id,
)


class TestBaseError:
    """Test BaseError class."""

    def test_basic_error_creation(self):
        """Test creating a basic error."""
        error = BaseError("Test error message")

        assert error.message == "Test error message"
        assert error.error_code == ErrorCode.INTERNAL_ERROR
        assert error.status_code == 500
        assert error.gateway_code == "INTERNAL_ERROR"
        assert error.context["error_id"] == error.error_id

    def test_error_with_cause(self):
        """Test error with underlying cause."""
        error = BaseError("Wrapped error", cause=ValueError("Original error"))

        assert error.context["cause"]["type"] == "ValueError"
        assert error.context["cause"]["message"] == "Original error"
        assert isinstance(error.cause, ValueError)
        assert "Original error" in "".join(error.context["cause"]["traceback"])

    def test_correlation_id_is_captured(self):
        set_correlation_id("corr-123")
        error = BaseError("With correlation")

        assert error.context["correlation_id"] == "corr-123"

    def test_add_context_is_fluent(self):
        error = BaseError("Oops")
        assert error.add_context(field="x") is error
        assert error.context["field"] == "x"

    @pytest.mark.parametrize(
        "status_code, level", [(500, "error"), (404, "warning"), (302, "info")]
    )
    def test_log_level_follows_status(self, status_code, level):
        with patch("query_gateway_core.utils.logger.get_logger") as mock_get_logger:
            BaseError("Logged", status_code=status_code)

        getattr(mock_get_logger.return_value, level).assert_called_once()


class TestGatewayCodes:
    """Each failure maps to the code surfaced in GatewayResult.error."""

    @pytest.mark.parametrize(
        "error, code",
        [
            (ValidationError("bad"), "VALIDATION_ERROR"),
            (CredentialNotFoundError(), "TENANT_NOT_FOUND"),
            (DecryptionError(), "DECRYPTION_ERROR"),
            (AuthenticationError(), "AUTHENTICATION_ERROR"),
            (UpstreamProtocolError("fault", service_name="soap"), "UPSTREAM_PROTOCOL_ERROR"),
            (MalformedResponseError("junk", service_name="odata"), "MALFORMED_RESPONSE"),
            (GatewayTimeoutError(stage="token"), "TimeoutError"),
            (ConfigurationError("no key"), "INTERNAL_ERROR"),
        ],
    )
    def test_gateway_code(self, error, code):
        assert error.gateway_code == code

    def test_authentication_error_carries_upstream(self):
        error = AuthenticationError(
            "Rejected", upstream_status=400, upstream_body="invalid_grant", grant_type="password"
        )

        assert error.status_code == 401
        assert error.upstream_body == "invalid_grant"
        assert error.context["upstream_status"] == 400
        assert error.context["grant_type"] == "password"

    def test_upstream_protocol_error_context(self):
        error = UpstreamProtocolError(
            "Fault", service_name="soap", upstream_status=500, fault_type="Server"
        )

        assert error.context["service_name"] == "soap"
        assert error.fault_type == "Server"
        assert error.status_code == 502

    def test_timeout_records_stage(self):
        assert GatewayTimeoutError(stage="odata").context["stage"] == "odata"


class TestFactories:
    """Test the duplicate factory."""

    def test_duplicate(self):
        error = duplicate("TenantCredential", client_id="abc")

        assert isinstance(error, DuplicateError)
        assert isinstance(error, RepositoryError)
        assert error.status_code == 409
        assert error.gateway_code == "DUPLICATE"
        assert error.error_code == ErrorCode.DUPLICATE
        assert error.context["client_id"] == "abc"


class TestCorrelationId:
    """Test thread-local correlation id helpers."""

    def test_set_get_clear(self):
        assert get_correlation_id() is None
        set_correlation_id("abc")
        assert get_correlation_id() == "abc"
        clear_correlation_id()
        assert get_correlation_id() is None
        clear_correlation_id()


def test_parse_warning_keeps_fragment():
    warning = ParseWarning("garbage", reason="no operator")

    assert warning.fragment == "garbage"
    assert "no operator" in str(warning)
