"""Reference chat gateway: the server side of the marketchat protocol.

Serves the WebSocket and history endpoints the client core talks to, with
in-memory state only. Used for local development and integration tests.
"""
from .registry import GatewayRegistry, registry
from .router import router

__all__ = ["GatewayRegistry", "registry", "router"]
