"""
Operation context for cross-cutting concerns.

Wraps service operations with ENTER/EXIT logging, a correlation id and
duration measurement. Errors are logged with the operation context and
re-raised unchanged.
"""

import time
import uuid
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar, Union, cast

from ..exceptions import BaseError, get_correlation_id, set_correlation_id
from ..utils.logger import get_logger
from .tenant_context import TenantContext


class OperationContext:
    """Context for a specific operation."""

    def __init__(self, operation_name: str, correlation_id: Optional[str] = None, **context):
        self.operation_name = operation_name
        self.operation_id = str(uuid.uuid4())
        self.correlation_id = correlation_id or get_correlation_id() or str(uuid.uuid4())

        # Child operations on this thread share the correlation id
        set_correlation_id(self.correlation_id)

        self.context: Dict[str, Any] = context
        self.context["operation_id"] = self.operation_id
        self.context["correlation_id"] = self.correlation_id

        self.start_time = time.perf_counter()

    @property
    def duration_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000

    def add_context(self, **kwargs) -> None:
        self.context.update(kwargs)


@contextmanager
def operation_scope(name: str, **context):
    """Log entry and exit of an operation, enriching any BaseError raised inside."""
    logger = get_logger()

    tenant_id = TenantContext.get_current_tenant_id()
    if tenant_id and "tenant_id" not in context:
        context["tenant_id"] = tenant_id

    op_ctx = OperationContext(name, **context)
    logger.debug(f"ENTER: {name}", extra=dict(op_ctx.context))

    try:
        yield op_ctx
    except BaseError as e:
        e.add_context(operation_name=name, operation_id=op_ctx.operation_id)
        logger.warning(
            f"ERROR: {name} -> {e.error_code.value}: {e.message}",
            extra={
                **op_ctx.context,
                "duration_ms": round(op_ctx.duration_ms, 2),
                "error_id": e.error_id,
                "status": "error",
            },
        )
        raise
    except Exception as e:
        logger.exception(
            f"ERROR: {name} -> {type(e).__name__}: {e}",
            extra={
                **op_ctx.context,
                "duration_ms": round(op_ctx.duration_ms, 2),
                "error_type": type(e).__name__,
                "status": "error",
            },
        )
        raise
    else:
        logger.debug(
            f"EXIT: {name}",
            extra={**op_ctx.context, "duration_ms": round(op_ctx.duration_ms, 2), "status": "success"},
        )


F = TypeVar("F", bound=Callable[..., Any])


def operation(name: Union[Optional[str], Callable] = None):
    """
    Decorator that runs the wrapped callable inside :func:`operation_scope`.

    Usable bare (``@operation``) or with an explicit name
    (``@operation("credentials.provision")``). Without a name the operation
    is called ``<module>.<Class>.<function>``.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            if name is not None:
                op_name = name
            else:
                op_name = func.__name__
                if args and not isinstance(args[0], (str, int, float, bool)):
                    op_name = f"{args[0].__class__.__name__}.{op_name}"
                op_name = f"{func.__module__.split('.')[-1]}.{op_name}"

            with operation_scope(op_name, source_module=func.__module__):
                return func(*args, **kwargs)

        return cast(F, wrapper)

    if callable(name):
        func, name = name, None
        return decorator(func)

    return decorator
