"""
Constants and enums for the Query Gateway Core framework.

This module centralizes the magic strings used for configuration, logging
and the outbound ION API protocols so they stay consistent across modules.
"""

from enum import Enum


class QueueName(str, Enum):
    """Standard queue names used in the framework."""

    LOGS = "logs-queue"
    AUDIT = "audit-queue"


class LogLevel(str, Enum):
    """Standard logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EnvironmentVariable(str, Enum):
    """Standard environment variable names."""

    AZURE_STORAGE_CONNECTION = "AzureWebJobsStorage"
    DATABASE_URL = "DATABASE_URL"
    APP_ENV = "APP_ENV"
    LOG_LEVEL = "LOG_LEVEL"
    DEBUG = "DEBUG"
    TENANT_ENCRYPTION_KEY = "TENANT_ENCRYPTION_KEY"
    ALLOW_INSECURE_DEV_KEY = "ALLOW_INSECURE_DEV_KEY"
    ION_API_BASE_URL = "ION_API_BASE_URL"
    ENABLE_QUEUE_LOGGING = "ENABLE_QUEUE_LOGGING"


class HealthCheckStatus(str, Enum):
    """Status values recorded by tenant connection tests."""

    TESTING = "testing"
    CONNECTED = "connected"
    ERROR = "error"


class AuditEvent(str, Enum):
    """Events reported to the audit sink."""

    AUTHENTICATION_FAILED = "authentication_failed"
    CREDENTIAL_PROVISIONED = "credential_provisioned"
    CREDENTIAL_DELETED = "credential_deleted"


# Keys that must never be written to logs in clear text
SENSITIVE_LOG_KEYS = frozenset(
    {
        "client_secret",
        "service_account_access_key",
        "service_account_secret_key",
        "access_token",
        "refresh_token",
        "password",
        "secret_key",
        "authorization",
    }
)


class InforHeader(str, Enum):
    """Outbound HTTP header names used against the ION API."""

    LN_COMPANY = "X-Infor-LnCompany"
    LN_IDENTITY = "X-Infor-LnIdentity"
    ODATA_VERSION = "OData-Version"
    ODATA_MAX_VERSION = "OData-MaxVersion"
    SOAP_ACTION = "SOAPAction"


class Namespaces:
    """XML namespaces for SOAP envelopes."""

    SOAP_ENVELOPE = "http://schemas.xmlsoap.org/soap/envelope/"
    XSI = "http://www.w3.org/2001/XMLSchema-instance"
    XSD = "http://www.w3.org/2001/XMLSchema"
    LN_C4WS = "http://www.infor.com/ln/c4ws"


# Numeric constants
class Limits:
    """System limits and thresholds."""

    DEFAULT_RECORD_LIMIT = 15
    TOKEN_SAFETY_MARGIN_SECONDS = 300
    AES_KEY_BYTES = 32
    AES_NONCE_BYTES = 12
    AES_TAG_BYTES = 16
    RAW_RESPONSE_PREVIEW_CHARS = 2000


# Time-related constants (in seconds)
class Timeouts:
    """Timeout values in seconds."""

    TOKEN_REQUEST = 30
    EXTERNAL_API_CALL = 60
    AUDIT_DISPATCH = 5
