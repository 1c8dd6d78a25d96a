"""Gateway entry point."""

from .dispatcher import GatewayDispatcher

__all__ = ["GatewayDispatcher"]
