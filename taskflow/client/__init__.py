"""
Realtime client: connection state machine, event emitter and live view.
"""

from taskflow.client.connection import ConnectionState, ExponentialBackoff, RealtimeClient
from taskflow.client.events import EventEmitter
from taskflow.client.indicators import TypingIndicators
from taskflow.client.store import RealtimeStore

__all__ = [
    "ConnectionState",
    "EventEmitter",
    "ExponentialBackoff",
    "RealtimeClient",
    "RealtimeStore",
    "TypingIndicators",
]
