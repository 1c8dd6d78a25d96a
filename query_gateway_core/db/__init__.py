"""
SQLAlchemy models for tenant credential storage.
"""

from .db_base import TimestampMixin, UUIDMixin, utc_now
from .db_config import (
    Base,
    DatabaseManager,
    close_db,
    get_db_manager,
    import_all_models,
    initialize_db,
    set_db_manager,
)
from .db_credential_models import RegisteredIdentity, TenantCredentialRecord, TenantHealthCheck

__all__ = [
    # Base definitions
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "utc_now",
    # Configuration
    "DatabaseManager",
    "close_db",
    "get_db_manager",
    "import_all_models",
    "initialize_db",
    "set_db_manager",
    # Models
    "RegisteredIdentity",
    "TenantCredentialRecord",
    "TenantHealthCheck",
]
