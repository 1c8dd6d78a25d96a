"""Utility modules for the query gateway core."""

# Encryption utilities
from .encryption_utils import (
    CredentialVault,
    decrypt_fields,
    encrypt_fields,
    get_vault,
    parse_master_key,
    reset_vault,
)

# Outbound HTTP
from .http_transport import (
    Deadline,
    HttpTransport,
    Transport,
    TransportResponse,
    effective_timeout,
)

# JSON helpers
from .json_utils import EnhancedJSONEncoder, dumps, loads

# Logging
from .logger import configure_logging, get_logger, redact, reset_logging

__all__ = [
    # Encryption
    "CredentialVault",
    "decrypt_fields",
    "encrypt_fields",
    "get_vault",
    "parse_master_key",
    "reset_vault",
    # HTTP
    "Deadline",
    "HttpTransport",
    "Transport",
    "TransportResponse",
    "effective_timeout",
    # JSON
    "EnhancedJSONEncoder",
    "dumps",
    "loads",
    # Logging
    "configure_logging",
    "get_logger",
    "redact",
    "reset_logging",
]
