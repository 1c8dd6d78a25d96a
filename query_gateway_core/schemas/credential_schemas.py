"""
Pydantic schemas for tenant OAuth2 credentials.

``TenantCredential`` is the decrypted, in-memory view handed to the token
manager and translators. It is never persisted in this form; the service
layer encrypts the secret fields before they reach the database.
"""

import re
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..constants import InforHeader

SECRET_FIELDS = ("client_secret", "service_account_access_key", "service_account_secret_key")

_TENANT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def join_url(base: str, path: str) -> str:
    """Join a base URL and a relative path with exactly one slash."""
    if not path:
        return base
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


class BaseCredentialSchema(BaseModel):
    """Base schema for all credential types."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra="forbid",
    )


class TenantCredentialFields(BaseCredentialSchema):
    """Fields shared by the create schema and the decrypted view."""

    tenant_name: str = Field(..., min_length=1, max_length=100, description="Unique tenant name")
    tenant_id: Optional[str] = Field(None, description="ION tenant identifier used in API paths")
    client_id: str = Field(..., min_length=1, description="OAuth2 client id")
    client_secret: str = Field(..., min_length=1, repr=False, description="OAuth2 client secret")
    client_name: Optional[str] = Field(None, description="Display name of the OAuth2 client")
    identity_url: str = Field(..., description="Identity provider base URL")
    portal_url: str = Field(..., description="Authorization server base URL")
    token_endpoint: str = Field(default="token.oauth2")
    authorization_endpoint: str = Field(default="authorization.oauth2")
    revoke_endpoint: str = Field(default="revoke_token.oauth2")
    service_account_access_key: str = Field(..., min_length=1, repr=False)
    service_account_secret_key: str = Field(..., min_length=1, repr=False)
    scope: Optional[str] = Field(default="read write")
    version: str = Field(default="1.0")
    data_type: str = Field(default="12")
    ln_company: Optional[str] = Field(None, description="X-Infor-LnCompany override")
    ln_identity: Optional[str] = Field(None, description="X-Infor-LnIdentity override")

    @field_validator("tenant_name")
    @classmethod
    def validate_tenant_name(cls, v):
        if not _TENANT_NAME_PATTERN.match(v):
            raise ValueError(
                "Tenant name can only contain letters, numbers, underscore, hyphen, and dot"
            )
        return v

    @field_validator("identity_url", "portal_url")
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(("https://", "http://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @model_validator(mode="after")
    def default_tenant_id(self):
        if not self.tenant_id:
            # validate_assignment would recurse through this validator
            object.__setattr__(self, "tenant_id", self.tenant_name)
        return self


class TenantCredentialCreate(TenantCredentialFields):
    """Schema for provisioning a tenant."""


class TenantCredential(TenantCredentialFields):
    """Decrypted tenant credential, held in memory only while in use."""

    is_active: bool = True

    @property
    def token_url(self) -> str:
        return join_url(self.portal_url, self.token_endpoint)

    @property
    def revoke_url(self) -> str:
        return join_url(self.portal_url, self.revoke_endpoint)

    def infor_headers(self) -> Dict[str, str]:
        """Tenant-specific identity headers for outbound protocol calls."""
        headers = {}
        if self.ln_company:
            headers[InforHeader.LN_COMPANY.value] = self.ln_company
        if self.ln_identity:
            headers[InforHeader.LN_IDENTITY.value] = self.ln_identity
        return headers


class TenantCredentialUpdate(BaseCredentialSchema):
    """Partial update: only fields explicitly set are applied."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = Field(None, min_length=1)
    client_secret: Optional[str] = Field(None, min_length=1, repr=False)
    client_name: Optional[str] = None
    identity_url: Optional[str] = None
    portal_url: Optional[str] = None
    token_endpoint: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    revoke_endpoint: Optional[str] = None
    service_account_access_key: Optional[str] = Field(None, min_length=1, repr=False)
    service_account_secret_key: Optional[str] = Field(None, min_length=1, repr=False)
    scope: Optional[str] = None
    version: Optional[str] = None
    data_type: Optional[str] = None
    ln_company: Optional[str] = None
    ln_identity: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("identity_url", "portal_url")
    @classmethod
    def validate_url(cls, v):
        if v is not None and not v.startswith(("https://", "http://")):
            raise ValueError("URL must start with http:// or https://")
        return v


class TenantCredentialSummary(BaseModel):
    """Secret-free view of a provisioned tenant."""

    id: str
    tenant_name: str
    tenant_id: str
    client_id: str
    client_name: Optional[str] = None
    portal_url: str
    scope: Optional[str] = None
    version: str
    ln_company: Optional[str] = None
    ln_identity: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConnectionTestResult(BaseModel):
    """Outcome of a tenant connection test."""

    tenant_name: str
    success: bool
    message: str
    response_time_ms: float
    token_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    has_refresh_token: bool = False
    scope: Optional[str] = None
