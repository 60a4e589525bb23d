"""
Connection Manager - One persistent WebSocket with reconnect.

Owns a single client WebSocket: dials it, decodes inbound JSON frames in
transport order, reconnects after any closure while auto-reconnect is on, and
tears everything down on close().

Engineering Standards:
- Handlers are read from a mutable cell at dispatch time, never captured at
  connect time, so a reconnect cannot run an outdated callback
- send() never raises and never queues: False means the frame was dropped
- A teardown guard stops every handler once close() has started
- No buffering or replay across reconnects: frames missed while
  disconnected are gone

Message Protocol:
- Inbound: one JSON object per text message
- Anything else is a protocol error, dropped and reported through
  on_protocol_error

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, fields
from typing import Any, Callable, Optional, Sequence

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from pydantic import BaseModel

from .reconnection_policy import ConnectionStatus, FixedIntervalPolicy, ReconnectPolicy
from ..observability import metrics

logger = logging.getLogger(__name__)

__all__ = ["ConnectionManager", "ConnectionHandlers", "ProtocolError", "open_connection"]


class ProtocolError(ValueError):
    """Raised for an inbound message that is not a JSON object."""
    pass


@dataclass
class ConnectionHandlers:
    """
    Mutable handler cell.

    Attributes:
        on_message: fn(frame: dict) for every decoded frame
        on_connect: fn() after the socket opens
        on_disconnect: fn() after a closure or failed connect
        on_protocol_error: fn(raw: str, error: Exception) for undecodable input

    Handlers may be plain functions or coroutine functions.
    """
    on_message: Optional[Callable[[dict], Any]] = None
    on_connect: Optional[Callable[[], Any]] = None
    on_disconnect: Optional[Callable[[], Any]] = None
    on_protocol_error: Optional[Callable[[str, Exception], Any]] = None


_HANDLER_NAMES = frozenset(f.name for f in fields(ConnectionHandlers))


class ConnectionManager:
    """
    Persistent WebSocket client with fixed-interval reconnect.

    Lifecycle:
    1. start() spawns the connection task
    2. Task dials the URL (status CONNECTING)
    3. Open → CONNECTED, on_connect, then frames → on_message in order
    4. Closure → DISCONNECTED (clean) or ERROR (abnormal/failed dial), on_disconnect
    5. If auto_reconnect: sleep policy delay, go to 2
    6. close() stops the loop, cancels the pending sleep and closes the socket

    Concurrency Model:
    - One asyncio task per connection
    - All handler calls happen on that task, one at a time
    """

    __slots__ = (
        'url',
        'auto_reconnect',
        'policy',
        'subprotocols',
        'open_timeout',
        'attempt_count',
        'stats',
        '_handlers',
        '_connect',
        '_ws',
        '_status',
        '_task',
        '_closed',
    )

    def __init__(
        self,
        url: str,
        handlers: Optional[ConnectionHandlers] = None,
        *,
        auto_reconnect: bool = True,
        reconnect_interval: float = 3.0,
        policy: Optional[ReconnectPolicy] = None,
        subprotocols: Optional[Sequence[str]] = None,
        open_timeout: Optional[float] = 10.0,
        connect_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Initialize connection manager (does not dial yet).

        Args:
            url: ws:// or wss:// target
            handlers: Initial handler cell (empty when None)
            auto_reconnect: Reconnect after every closure until close()
            reconnect_interval: Delay for the default fixed-interval policy
            policy: Reconnect delay strategy (overrides reconnect_interval)
            subprotocols: WebSocket subprotocols offered on connect
            open_timeout: Handshake timeout in seconds
            connect_factory: Dialer with the websockets.connect signature
        """
        self.url = url
        self.auto_reconnect = auto_reconnect
        self.policy = policy or FixedIntervalPolicy(interval=reconnect_interval)
        self.subprotocols = list(subprotocols) if subprotocols else None
        self.open_timeout = open_timeout
        self.attempt_count = 0

        self._handlers = handlers or ConnectionHandlers()
        self._connect = connect_factory or websockets.connect
        self._ws: Any = None
        self._status = ConnectionStatus.DISCONNECTED
        self._task: Optional[asyncio.Task] = None
        self._closed = False

        self.stats = {
            'connects': 0,
            'reconnects_scheduled': 0,
            'frames_received': 0,
            'frames_sent': 0,
            'frames_dropped': 0,
            'protocol_errors': 0,
        }

    @property
    def status(self) -> ConnectionStatus:
        """Current connection status."""
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    @property
    def is_closed(self) -> bool:
        """True once close() has been called."""
        return self._closed

    @property
    def handlers(self) -> ConnectionHandlers:
        return self._handlers

    def set_handlers(self, **handlers: Optional[Callable[..., Any]]) -> None:
        """
        Replace one or more handlers in place.

        Takes effect for the very next dispatch, including on the current
        socket.

        Raises:
            TypeError: For an unknown handler name
        """
        unknown = set(handlers) - _HANDLER_NAMES
        if unknown:
            raise TypeError(f"Unknown handler(s): {', '.join(sorted(unknown))}")
        for name, fn in handlers.items():
            setattr(self._handlers, name, fn)

    def start(self) -> ConnectionManager:
        """Spawn the connection task. Must run inside an event loop."""
        if self._closed:
            raise RuntimeError("Connection already closed")
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self._run(),
                name=f"connection:{self.url}"
            )
        return self

    async def send(self, frame: Any) -> bool:
        """
        Send one frame as JSON text.

        Args:
            frame: dict, pydantic model or pre-encoded str

        Returns:
            True if handed to the transport, False if dropped
        """
        ws = self._ws
        if self._closed or ws is None or self._status is not ConnectionStatus.CONNECTED:
            self.stats['frames_dropped'] += 1
            logger.debug(f"Dropped frame for {self.url}: connection is {self._status.value}")
            return False

        if isinstance(frame, BaseModel):
            payload = json.dumps(frame.model_dump(exclude_none=True))
        elif isinstance(frame, str):
            payload = frame
        else:
            payload = json.dumps(frame)

        try:
            await ws.send(payload)
        except (ConnectionClosed, OSError) as e:
            self.stats['frames_dropped'] += 1
            logger.warning(f"Send failed on {self.url}: {e}")
            return False

        self.stats['frames_sent'] += 1
        return True

    def close(self) -> None:
        """
        Close the connection and cancel any pending reconnect.

        Safe to call repeatedly and from inside a handler. Handlers do not
        run after this returns.
        """
        if self._closed:
            return
        self._closed = True

        task = self._task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            # From inside a handler the reader loop stops on its own
            if task is not current:
                task.cancel()

        self._status = ConnectionStatus.DISCONNECTED
        logger.debug(f"Closed connection to {self.url}")

    async def wait_closed(self) -> None:
        """Wait until the connection task has fully exited."""
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        await asyncio.gather(task, return_exceptions=True)

    async def aclose(self) -> None:
        """close() and wait for the socket to be released."""
        self.close()
        await self.wait_closed()

    async def _run(self) -> None:
        """Connect / read / reconnect loop."""
        try:
            while not self._closed:
                await self._connect_once()

                if self._closed or not self.auto_reconnect:
                    break

                delay = self.policy.next_delay(self.attempt_count)
                self.attempt_count += 1
                self.stats['reconnects_scheduled'] += 1
                metrics.record_reconnect_scheduled()

                logger.info(
                    f"Reconnecting to {self.url} in {delay:.2f}s "
                    f"(attempt {self.attempt_count})"
                )
                await asyncio.sleep(delay)

        except asyncio.CancelledError:
            logger.debug(f"Connection task cancelled for {self.url}")
        finally:
            await self._release_socket()
            if self._closed:
                self._status = ConnectionStatus.DISCONNECTED

    async def _connect_once(self) -> None:
        """Dial once and pump frames until the socket closes."""
        self._status = ConnectionStatus.CONNECTING

        kwargs: dict[str, Any] = {}
        if self.subprotocols:
            kwargs['subprotocols'] = self.subprotocols
        if self.open_timeout is not None:
            kwargs['open_timeout'] = self.open_timeout

        try:
            ws = await self._connect(self.url, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to connect to {self.url}: {e}")
            if not self._closed:
                self._status = ConnectionStatus.ERROR
                await self._dispatch('on_disconnect')
            return

        if self._closed:
            self._ws = ws
            return

        self._ws = ws
        self.attempt_count = 0
        self.stats['connects'] += 1
        self._status = ConnectionStatus.CONNECTED
        metrics.record_connection_opened()
        logger.info(f"Connected to {self.url}")

        abnormal = False
        try:
            await self._dispatch('on_connect')

            # Closed by on_connect: never start reading
            if not self._closed:
                async for raw in ws:
                    if self._closed:
                        break
                    await self._handle_raw(raw)
                    if self._closed:
                        break

        except ConnectionClosedError as e:
            abnormal = True
            logger.warning(f"Connection to {self.url} closed abnormally: {e}")
        except ConnectionClosed:
            pass
        except OSError as e:
            abnormal = True
            logger.warning(f"Transport error on {self.url}: {e}")
        finally:
            metrics.record_connection_closed()

        await self._release_socket()

        if self._closed:
            return

        self._status = ConnectionStatus.ERROR if abnormal else ConnectionStatus.DISCONNECTED
        logger.info(f"Disconnected from {self.url} ({self._status.value})")
        await self._dispatch('on_disconnect')

    async def _handle_raw(self, raw: Any) -> None:
        """Decode one inbound message and hand it to on_message."""
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = bytes(raw).decode('utf-8')
            frame = json.loads(raw)
            if not isinstance(frame, dict):
                raise ProtocolError(f"Expected JSON object, got {type(frame).__name__}")
        except (UnicodeDecodeError, json.JSONDecodeError, ProtocolError) as e:
            self.stats['protocol_errors'] += 1
            metrics.record_protocol_error()
            text = raw if isinstance(raw, str) else repr(raw)
            if self._handlers.on_protocol_error is None:
                logger.warning(f"Dropped malformed frame from {self.url}: {e}")
            await self._dispatch('on_protocol_error', text, e)
            return

        self.stats['frames_received'] += 1
        metrics.record_frame_received(str(frame.get("type", "unknown")))
        await self._dispatch('on_message', frame)

    async def _dispatch(self, name: str, *args: Any) -> None:
        """Invoke the current handler ``name``; handler errors are logged."""
        if self._closed:
            return
        handler = getattr(self._handlers, name)
        if handler is None:
            return
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{name} handler failed for {self.url}: {e}", exc_info=True)

    async def _release_socket(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error while closing socket for {self.url}: {e}")


def open_connection(
    url: str,
    *,
    on_message: Optional[Callable[[dict], Any]] = None,
    on_connect: Optional[Callable[[], Any]] = None,
    on_disconnect: Optional[Callable[[], Any]] = None,
    on_protocol_error: Optional[Callable[[str, Exception], Any]] = None,
    auto_reconnect: bool = True,
    reconnect_interval: float = 3.0,
    **kwargs: Any,
) -> ConnectionManager:
    """
    Create and start a ConnectionManager.

    Extra keyword arguments (policy, subprotocols, open_timeout,
    connect_factory) are passed to the constructor.
    """
    handlers = ConnectionHandlers(
        on_message=on_message,
        on_connect=on_connect,
        on_disconnect=on_disconnect,
        on_protocol_error=on_protocol_error,
    )
    manager = ConnectionManager(
        url,
        handlers,
        auto_reconnect=auto_reconnect,
        reconnect_interval=reconnect_interval,
        **kwargs,
    )
    return manager.start()
