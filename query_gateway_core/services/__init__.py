"""Services for tenant credentials, tokens and audit events."""

from .audit_service import AuditNotifier, AuditSink, LoggingAuditSink, QueueAuditSink
from .credential_service import CredentialService
from .token_service import InMemoryTokenCache, OAuth2Client, TokenCache, TokenManager

__all__ = [
    "AuditNotifier",
    "AuditSink",
    "CredentialService",
    "InMemoryTokenCache",
    "LoggingAuditSink",
    "OAuth2Client",
    "QueueAuditSink",
    "TokenCache",
    "TokenManager",
]
