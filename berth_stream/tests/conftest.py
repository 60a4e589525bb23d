"""
Test configuration and fixtures.

Fixes import paths and provides an in-memory WebSocket double, a dialer
that hands them out, and a fast StreamConfig.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

# Project root, so berth_stream imports without an install
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from berth_stream.config import StreamConfig

_CLEAN_CLOSE = object()
_ABNORMAL_CLOSE = object()


class FakeWebSocket:
    """
    Async-iterable WebSocket double.

    feed() queues inbound messages; drop() ends iteration cleanly or
    abnormally; every sent payload lands in ``sent``.
    """

    def __init__(self):
        self.sent: list[str] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    def feed(self, message: Any) -> None:
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def drop(self, abnormal: bool = False) -> None:
        self._inbox.put_nowait(_ABNORMAL_CLOSE if abnormal else _CLEAN_CLOSE)

    @property
    def sent_frames(self) -> list[dict]:
        return [json.loads(payload) for payload in self.sent]

    async def send(self, payload: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(payload)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLEAN_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLEAN_CLOSE:
            self.closed = True
            raise StopAsyncIteration
        if item is _ABNORMAL_CLOSE:
            self.closed = True
            raise ConnectionClosedError(None, None)
        return item


class FakeConnector:
    """
    Stand-in for websockets.connect.

    Each call creates (or pops a prepared) FakeWebSocket; ``failures``
    makes the next N calls raise OSError.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.sockets: list[FakeWebSocket] = []
        self.failures = 0

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.calls.append((url, kwargs))
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> Optional[FakeWebSocket]:
        return self.sockets[-1] if self.sockets else None

    def urls(self) -> list[str]:
        return [url for url, _ in self.calls]


@pytest.fixture
def connector():
    """Fresh fake dialer."""
    return FakeConnector()


@pytest.fixture
def config(tmp_path):
    """Config with short timers and an isolated state dir."""
    return StreamConfig(
        base_url="http://berth.test",
        reconnect_interval=0.01,
        poll_interval=0.05,
        notify_debounce=0.01,
        resize_settle=0.02,
        initial_resize_delay=0.01,
        state_dir=str(tmp_path / "state"),
        storage_backend="memory",
    )


@pytest.fixture
def wait_until():
    """Return an awaitable poller: await wait_until(lambda: cond, timeout=1.0)."""

    async def _wait_until(predicate, timeout: float = 1.0, interval: float = 0.002):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait_until
