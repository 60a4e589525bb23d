"""
Berth Stream - Real-time streaming core for container stack management.

Keeps a client synchronized with:
- Long-running remote compose operations (per-operation WebSocket streams
  reconciled against a polled running-operations list)
- Interactive terminal sessions attached to remote containers
"""

__version__ = "1.0.0"
__author__ = "Backend Lead Developer"

from .config import StreamConfig
from .core import (
    ConnectionManager,
    EventAggregator,
    OperationRegistry,
    TerminalSession,
    TabRegistry,
)

__all__ = [
    "StreamConfig",
    "ConnectionManager",
    "EventAggregator",
    "OperationRegistry",
    "TerminalSession",
    "TabRegistry",
]
