"""
Tenant credential models.

Just the data structure; encryption and validation live in the service layer.
Secret columns hold vault tokens (``nonce:tag:ciphertext``), never plaintext.
"""

from sqlalchemy import Boolean, Column, DateTime, Float, Index, String, Text

from .db_base import TimestampMixin, UUIDMixin, utc_now
from .db_config import Base


class TenantCredentialRecord(Base, UUIDMixin, TimestampMixin):
    """OAuth2 client and service-account configuration for one tenant."""

    __tablename__ = "tenant_credentials"

    tenant_name = Column(String(100), nullable=False, unique=True)
    tenant_id = Column(String(100), nullable=False)
    client_id = Column(String(255), nullable=False, unique=True)
    client_name = Column(String(255), nullable=True)

    # Encrypted storage
    client_secret = Column(Text, nullable=False)
    service_account_access_key = Column(Text, nullable=False)
    service_account_secret_key = Column(Text, nullable=False)

    identity_url = Column(String(500), nullable=False)
    portal_url = Column(String(500), nullable=False)
    token_endpoint = Column(String(255), nullable=False)
    authorization_endpoint = Column(String(255), nullable=False)
    revoke_endpoint = Column(String(255), nullable=False)

    scope = Column(String(255), nullable=True)
    version = Column(String(20), nullable=False, default="1.0")
    data_type = Column(String(20), nullable=False, default="12")

    # Optional request-header overrides
    ln_company = Column(String(50), nullable=True)
    ln_identity = Column(String(100), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)


class RegisteredIdentity(Base, UUIDMixin, TimestampMixin):
    """A user credential key pair registered for a tenant before provisioning."""

    __tablename__ = "registered_identities"

    tenant_name = Column(String(100), nullable=False, index=True)
    access_key = Column(String(255), nullable=False)
    # Encrypted storage
    secret_key = Column(Text, nullable=False)

    __table_args__ = (Index("ix_identity_lookup", "tenant_name", "access_key", unique=True),)


class TenantHealthCheck(Base, UUIDMixin):
    """One connection test outcome for a tenant."""

    __tablename__ = "tenant_health_checks"

    tenant_name = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    response_time_ms = Column(Float, nullable=True)
    error_message = Column(Text, nullable=True)
    checked_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
