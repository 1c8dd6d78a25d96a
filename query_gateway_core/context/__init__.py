"""Context management for operations and tenant isolation."""

from .operation_context import OperationContext, operation, operation_scope
from .tenant_context import TenantContext, tenant_context

__all__ = [
    "operation",
    "operation_scope",
    "OperationContext",
    "TenantContext",
    "tenant_context",
]
