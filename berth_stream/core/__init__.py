"""
Core streaming modules.

This package contains the client-side streaming components: the persistent
connection manager, progress aggregation, the operation registry, and the
terminal session protocol with its tab registry.
"""

from .reconnection_policy import (
    ConnectionStatus,
    ReconnectPolicy,
    FixedIntervalPolicy,
    ExponentialBackoffPolicy,
)
from .connection_manager import ConnectionManager, ConnectionHandlers, open_connection
from .frames import StreamMessage, TerminalFrame
from .debounce import Debouncer
from .event_aggregator import EventAggregator
from .storage import StateStore, JsonFileStore, RedisStore, MemoryStore, StorageError
from .operation_registry import OperationRegistry, Operation, OperationNotFoundError
from .terminal_session import TerminalSession, SessionState, InvalidTransitionError
from .tab_registry import TabRegistry, TerminalTab, TerminalLimitError

__all__ = [
    "ConnectionStatus",
    "ReconnectPolicy",
    "FixedIntervalPolicy",
    "ExponentialBackoffPolicy",
    "ConnectionManager",
    "ConnectionHandlers",
    "open_connection",
    "StreamMessage",
    "TerminalFrame",
    "Debouncer",
    "EventAggregator",
    "StateStore",
    "JsonFileStore",
    "RedisStore",
    "MemoryStore",
    "StorageError",
    "OperationRegistry",
    "Operation",
    "OperationNotFoundError",
    "TerminalSession",
    "SessionState",
    "InvalidTransitionError",
    "TabRegistry",
    "TerminalTab",
    "TerminalLimitError",
]
