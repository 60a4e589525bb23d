"""
Reconnection Policies - Delay Strategies for Persistent Connections.

The default policy reconnects after a fixed interval. Under a sustained outage
this produces one reconnect attempt per interval per connection for as long
as the outage lasts; connections facing an unreliable network can swap in the
bounded exponential policy without changing the connection contract.

Policies:
- FixedIntervalPolicy: constant delay, no backoff (default)
- ExponentialBackoffPolicy: exponential growth, capped, with ±jitter

Author: Backend Lead Developer
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum

__all__ = [
    "ConnectionStatus",
    "ReconnectPolicy",
    "FixedIntervalPolicy",
    "ExponentialBackoffPolicy",
]


class ConnectionStatus(Enum):
    """
    Client connection status.

    State Transitions:
    CONNECTING → CONNECTED → DISCONNECTED (clean close)
    CONNECTING → ERROR (connect failure)
    CONNECTED → ERROR (abnormal close)
    DISCONNECTED/ERROR → CONNECTING (scheduled reconnect)
    """
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class ReconnectPolicy:
    """Base class for reconnect delay strategies."""

    def next_delay(self, attempt: int) -> float:
        """
        Return the delay in seconds before reconnect attempt ``attempt``.

        Args:
            attempt: Consecutive failed attempts so far (0-indexed)
        """
        raise NotImplementedError


@dataclass
class FixedIntervalPolicy(ReconnectPolicy):
    """
    Constant reconnect delay.

    Attributes:
        interval: Seconds to wait before every reconnect (default: 3s)
    """
    interval: float = 3.0

    def next_delay(self, attempt: int) -> float:
        return self.interval


@dataclass
class ExponentialBackoffPolicy(ReconnectPolicy):
    """
    Exponential backoff configuration with jitter.

    Attributes:
        base_delay: Initial retry delay (default: 500ms)
        max_delay: Maximum retry delay cap (default: 30s)
        jitter_factor: Randomization factor (default: ±25%)
        backoff_multiplier: Exponential growth rate (default: 2.0)
    """
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter_factor: float = 0.25
    backoff_multiplier: float = 2.0

    def next_delay(self, attempt: int) -> float:
        """
        Calculate next retry delay with exponential backoff + jitter.

        Formula:
        delay = min(base_delay * (multiplier ^ attempt), max_delay)
        jitter = delay * random.uniform(-jitter_factor, +jitter_factor)
        return delay + jitter

        Examples:
            attempt=0: ~500ms (±125ms)
            attempt=1: ~1s (±250ms)
            attempt=6: 30s (capped, ±7.5s)
        """
        delay = min(
            self.base_delay * (self.backoff_multiplier ** attempt),
            self.max_delay
        )

        jitter = delay * random.uniform(-self.jitter_factor, self.jitter_factor)

        return max(0.0, delay + jitter)
