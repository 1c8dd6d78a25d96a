"""Pydantic schemas for credentials, queries and results."""

from .credential_schemas import (
    SECRET_FIELDS,
    ConnectionTestResult,
    TenantCredential,
    TenantCredentialCreate,
    TenantCredentialSummary,
    TenantCredentialUpdate,
)
from .query_schemas import (
    CachedToken,
    FilterCondition,
    GatewayError,
    GatewayResult,
    OutboundRequest,
    QueryRequestConfig,
    normalize_record,
    normalize_value,
)

__all__ = [
    "SECRET_FIELDS",
    "CachedToken",
    "ConnectionTestResult",
    "FilterCondition",
    "GatewayError",
    "GatewayResult",
    "OutboundRequest",
    "QueryRequestConfig",
    "TenantCredential",
    "TenantCredentialCreate",
    "TenantCredentialSummary",
    "TenantCredentialUpdate",
    "normalize_record",
    "normalize_value",
]
