"""
WebSocket package for real-time collaboration.

Provides:
- Connection and room registries with scoped fan-out
- Presence tracking (who's online)
- Message routing for the envelope protocol
"""

from taskflow.websocket.dispatcher import MessageRouter
from taskflow.websocket.handler import router
from taskflow.websocket.manager import ConnectionManager

__all__ = ["ConnectionManager", "MessageRouter", "router"]
