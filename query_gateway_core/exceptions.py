"""
Consolidated exception system with error codes, context, and correlation support.

Every failure the gateway can hit is a subclass of ``BaseError``. Each class
carries a ``gateway_code`` that the dispatcher copies into
``GatewayResult.error.code`` so callers never see a raw exception.
"""

import threading
import traceback
import uuid
from enum import Enum
from typing import Any, Optional

_thread_local = threading.local()


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # System errors (1xxx)
    INTERNAL_ERROR = "1000"
    DATABASE_ERROR = "1001"
    CONNECTION_ERROR = "1002"
    CONFIGURATION_ERROR = "1003"
    TIMEOUT_ERROR = "1004"
    DECRYPTION_FAILED = "1005"

    # Validation errors (2xxx)
    VALIDATION_FAILED = "2000"
    MISSING_REQUIRED = "2002"

    # Resource errors (3xxx)
    DUPLICATE = "3001"
    CONFLICT = "3002"
    TENANT_NOT_FOUND = "3006"

    # Business logic errors (4xxx)
    AUTHENTICATION_FAILED = "4005"

    # External service errors (5xxx)
    EXTERNAL_API_ERROR = "5002"
    MALFORMED_RESPONSE = "5005"


class BaseError(Exception):
    """Base exception with context, error codes, logging, and error chaining."""

    gateway_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
        **context: Any,
    ):
        """
        Initialize base error with rich context.

        Args:
            message: Human-readable error message
            error_code: Standardized error code from ErrorCode enum
            status_code: HTTP status code for API responses
            cause: Original exception that caused this error
            **context: Additional context information
        """
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.cause = cause
        self.error_id = str(uuid.uuid4())
        self.context = context

        correlation_id = get_correlation_id()
        if correlation_id:
            self.context["correlation_id"] = correlation_id

        self.context["error_id"] = self.error_id

        if cause:
            self.context["cause"] = {
                "type": type(cause).__name__,
                "message": str(cause),
                "traceback": traceback.format_exception(type(cause), cause, cause.__traceback__),
            }

        self._log_error()

        super().__init__(message)

    def _log_error(self) -> None:
        """Log error with appropriate level based on status code."""
        # Lazy import: the logger module depends on config which must not import us back
        from .utils.logger import get_logger

        logger = get_logger()

        log_data = {
            "error_id": self.error_id,
            "error_code": self.error_code.value,
            "status_code": self.status_code,
            "error_message": self.message,
            "context": {k: v for k, v in self.context.items() if k not in ["cause", "traceback"]},
        }

        if "correlation_id" in self.context:
            log_data["correlation_id"] = self.context["correlation_id"]

        if self.status_code >= 500:
            logger.error(f"Error {self.error_code.value}: {self.message}", extra=log_data)
        elif self.status_code >= 400:
            logger.warning(f"Client error {self.error_code.value}: {self.message}", extra=log_data)
        else:
            logger.info(f"Error {self.error_code.value}: {self.message}", extra=log_data)

    def add_context(self, **kwargs: Any) -> "BaseError":
        """Add additional context to the error (fluent interface)."""
        self.context.update(kwargs)
        return self


# Layer-specific base exceptions
class RepositoryError(BaseError):
    """Repository layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
        **context,
    ):
        super().__init__(message, error_code, status_code, cause, **context)


class ServiceError(BaseError):
    """Service layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        operation: Optional[str] = None,
        cause: Optional[Exception] = None,
        **context,
    ):
        if operation:
            context["operation"] = operation
        super().__init__(message, error_code, 500, cause, **context)


class ValidationError(BaseError):
    """Validation errors."""

    gateway_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        cause: Optional[Exception] = None,
        **context,
    ):
        if field:
            context["field"] = field
        super().__init__(message, error_code, 400, cause, **context)


class ConfigurationError(BaseError):
    """Raised when the process configuration cannot support an operation."""

    def __init__(self, message: str, setting: Optional[str] = None, **kwargs):
        if setting:
            kwargs["setting"] = setting
        super().__init__(
            message, error_code=ErrorCode.CONFIGURATION_ERROR, status_code=500, **kwargs
        )


class DuplicateError(RepositoryError):
    """Raised when a unique resource already exists."""

    gateway_code = "DUPLICATE"

    def __init__(self, message: str, cause: Optional[Exception] = None, **context):
        super().__init__(
            message, error_code=ErrorCode.DUPLICATE, status_code=409, cause=cause, **context
        )


class ExternalServiceError(BaseError):
    """External service integration errors."""

    gateway_code = "UPSTREAM_PROTOCOL_ERROR"

    def __init__(
        self,
        message: str,
        service_name: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_API_ERROR,
        cause: Optional[Exception] = None,
        status_code: int = 502,
        **context,
    ):
        context["service_name"] = service_name
        super().__init__(message, error_code, status_code, cause, **context)


# Factory functions for common error patterns
def duplicate(
    resource_type: str, cause: Optional[Exception] = None, **identifiers
) -> DuplicateError:
    """Factory for duplicate resource errors (409)."""
    id_parts = [f"{k}={v}" for k, v in identifiers.items()]
    message = f"Duplicate {resource_type}"
    if id_parts:
        message += f": {', '.join(id_parts)}"

    return DuplicateError(message, cause=cause, resource_type=resource_type, **identifiers)


# Correlation ID management
def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current thread."""
    _thread_local.correlation_id = correlation_id


def get_correlation_id() -> Optional[str]:
    """Get the current thread's correlation ID."""
    return getattr(_thread_local, "correlation_id", None)


def clear_correlation_id() -> None:
    """Clear the current thread's correlation ID."""
    if hasattr(_thread_local, "correlation_id"):
        delattr(_thread_local, "correlation_id")


# ==================== PARSING ====================


class ParseWarning(UserWarning):
    """A filter fragment could not be parsed and was dropped from the query."""

    def __init__(self, fragment: str, reason: str = "no matching pattern"):
        self.fragment = fragment
        self.reason = reason
        super().__init__(f"Dropped filter fragment {fragment!r}: {reason}")


# ==================== CREDENTIAL-SPECIFIC EXCEPTIONS ====================


class CredentialNotFoundError(BaseError):
    """Raised when no credential is registered for the requested tenant."""

    gateway_code = "TENANT_NOT_FOUND"

    def __init__(self, message: str = "Credential not found", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.TENANT_NOT_FOUND, status_code=404, **kwargs
        )


class DecryptionError(BaseError):
    """Raised when a stored secret fails authentication or is malformed."""

    gateway_code = "DECRYPTION_ERROR"

    def __init__(self, message: str = "Failed to decrypt stored secret", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.DECRYPTION_FAILED, status_code=500, **kwargs
        )


# ==================== GATEWAY EXCEPTIONS ====================


class AuthenticationError(BaseError):
    """Raised when the token endpoint rejects the tenant credentials."""

    gateway_code = "AUTHENTICATION_ERROR"

    def __init__(
        self,
        message: str = "Authentication failed",
        upstream_status: Optional[int] = None,
        upstream_body: Optional[str] = None,
        grant_type: Optional[str] = None,
        **kwargs,
    ):
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body
        self.grant_type = grant_type
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTHENTICATION_FAILED,
            status_code=401,
            upstream_status=upstream_status,
            grant_type=grant_type,
            **kwargs,
        )


class UpstreamProtocolError(ExternalServiceError):
    """Raised on a SOAP fault or a non-2xx response from the target service."""

    def __init__(
        self,
        message: str,
        service_name: str,
        upstream_status: Optional[int] = None,
        upstream_body: Optional[str] = None,
        fault_type: Optional[str] = None,
        **kwargs,
    ):
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body
        self.fault_type = fault_type
        super().__init__(
            message,
            service_name=service_name,
            upstream_status=upstream_status,
            fault_type=fault_type,
            **kwargs,
        )


class MalformedResponseError(ExternalServiceError):
    """Raised when a response body is not the XML/JSON shape expected."""

    gateway_code = "MALFORMED_RESPONSE"

    def __init__(self, message: str, service_name: str, **kwargs):
        super().__init__(
            message, service_name=service_name, error_code=ErrorCode.MALFORMED_RESPONSE, **kwargs
        )


class GatewayTimeoutError(BaseError):
    """Raised when a caller deadline expires during token or protocol I/O."""

    gateway_code = "TimeoutError"

    def __init__(self, message: str = "Deadline exceeded", stage: Optional[str] = None, **kwargs):
        if stage:
            kwargs["stage"] = stage
        super().__init__(
            message=message, error_code=ErrorCode.TIMEOUT_ERROR, status_code=504, **kwargs
        )
