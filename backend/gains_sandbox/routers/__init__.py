# API Routers

from . import health, whatif, websocket

__all__ = ["health", "whatif", "websocket"]
