"""
Terminal Session - Interactive container shell over a dedicated WebSocket.

Protocol:
1. Negotiate over REST → {websocket_url, access_token, shell, ...}
2. Dial websocket_url offering subprotocol "bearer.<access_token>"
   (no auto-reconnect)
3. On open send start{stack_name, service, container?, cols, rows, shell}
4. Server replies success{session_id} → connected (ERROR after
   handshake_timeout without it)
5. Afterwards every frame carries session_id:
   client → server: input{input}, resize{cols, rows}, close{exit_code}
   server → client: output{output}, close{exit_code}, error{error}
6. input/output payloads are base64 strings

State Machine:
    IDLE → CONNECTING → CONNECTED → CLOSED
    ERROR reachable from IDLE, CONNECTING and CONNECTED
    CLOSED and ERROR are final: a new session must be negotiated

Resize Handling:
- request_resize() calls are coalesced over resize_settle and forwarded
  as a single resize frame
- The first resize is sent initial_resize_delay after connected

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from .connection_manager import ConnectionHandlers, ConnectionManager
from .debounce import Debouncer
from .frames import TerminalFrame
from ..api.client import BerthClient, NegotiationError
from ..config import StreamConfig
from ..observability import metrics

logger = logging.getLogger(__name__)

__all__ = ["TerminalSession", "SessionState", "InvalidTransitionError"]


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    ERROR = "error"


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.CLOSED, SessionState.ERROR},
    SessionState.CONNECTING: {SessionState.CONNECTED, SessionState.CLOSED, SessionState.ERROR},
    SessionState.CONNECTED: {SessionState.CLOSED, SessionState.ERROR},
    SessionState.CLOSED: set(),
    SessionState.ERROR: set(),
}

_LIVE_STATES = frozenset({SessionState.CONNECTING, SessionState.CONNECTED})


class InvalidTransitionError(RuntimeError):
    """Raised when a session is driven into a state it cannot reach."""

    def __init__(self, current: SessionState, target: SessionState):
        super().__init__(f"Cannot move terminal session from {current.value} to {target.value}")
        self.current = current
        self.target = target


class TerminalSession:
    """
    One interactive terminal attached to a remote container.

    Attributes:
        id: Local identifier (stable for the life of the object)
        session_id: Server-assigned id, known once connected
        server_id, stack_name, service, container: Attach target
        cols, rows: Current terminal size
        shell: Shell requested / resolved by negotiation
        state: SessionState
        error: Reason for the ERROR state
        exit_code: Exit code reported on close
    """

    __slots__ = (
        'id',
        'session_id',
        'server_id',
        'stack_name',
        'service',
        'container',
        'cols',
        'rows',
        'shell',
        'server_name',
        'state',
        'error',
        'exit_code',
        'client',
        'config',
        'on_output',
        'on_state_change',
        '_connect_factory',
        '_connection',
        '_resizer',
        '_initial_resize',
        '_settled',
        '_tasks',
    )

    def __init__(
        self,
        client: BerthClient,
        server_id: int,
        stack_name: str,
        service: str,
        container: Optional[str] = None,
        *,
        config: Optional[StreamConfig] = None,
        on_output: Optional[Callable[[bytes], Any]] = None,
        on_state_change: Optional[Callable[[TerminalSession], Any]] = None,
        connect_factory: Optional[Callable[..., Any]] = None,
    ):
        self.config = config or StreamConfig()
        self.client = client

        self.id = uuid.uuid4().hex
        self.session_id: Optional[str] = None
        self.server_id = server_id
        self.stack_name = stack_name
        self.service = service
        self.container = container
        self.cols = self.config.default_cols
        self.rows = self.config.default_rows
        self.shell = self.config.default_shell
        self.server_name = ""
        self.state = SessionState.IDLE
        self.error: Optional[str] = None
        self.exit_code: Optional[int] = None

        self.on_output = on_output
        self.on_state_change = on_state_change

        self._connect_factory = connect_factory
        self._connection: Optional[ConnectionManager] = None
        self._resizer = Debouncer(self.config.resize_settle, self._send_resize)
        self._initial_resize: Optional[asyncio.TimerHandle] = None
        self._settled = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self.state is SessionState.CONNECTING

    @property
    def is_finished(self) -> bool:
        """True once the session is CLOSED or ERROR."""
        return not _TRANSITIONS[self.state]

    @property
    def label(self) -> str:
        return f"{self.service}:{self.container}" if self.container else self.service

    def to_dict(self) -> dict:
        """Snapshot for display and logging."""
        return {
            'id': self.id,
            'session_id': self.session_id,
            'server_id': self.server_id,
            'stack_name': self.stack_name,
            'service': self.service,
            'container': self.container,
            'cols': self.cols,
            'rows': self.rows,
            'is_connected': self.is_connected,
            'is_connecting': self.is_connecting,
            'state': self.state.value,
            'error': self.error,
            'exit_code': self.exit_code,
        }

    async def start(self, cols: Optional[int] = None, rows: Optional[int] = None) -> bool:
        """
        Negotiate, connect and wait for the server's acknowledgement.

        Args:
            cols, rows: Initial terminal size (configured defaults when None)

        Returns:
            True if the session reached CONNECTED within handshake_timeout

        Raises:
            InvalidTransitionError: If the session was already started
        """
        if cols is not None:
            self.cols = cols
        if rows is not None:
            self.rows = rows

        self._transition(SessionState.CONNECTING)

        try:
            info = await self.client.negotiate_terminal(
                self.server_id,
                self.stack_name,
                self.service,
                shell=self.shell,
                container=self.container,
            )
        except NegotiationError as e:
            metrics.record_terminal_negotiation(success=False)
            self._fail(str(e))
            return False

        metrics.record_terminal_negotiation(success=True)
        if self.state is not SessionState.CONNECTING:
            # Closed while negotiating
            return False

        self.shell = info.shell or self.shell
        self.server_name = info.server_name

        handlers = ConnectionHandlers(
            on_message=self._on_frame,
            on_connect=self._on_connect,
            on_disconnect=self._on_disconnect,
            on_protocol_error=self._on_protocol_error,
        )
        self._connection = ConnectionManager(
            info.websocket_url,
            handlers,
            auto_reconnect=False,
            subprotocols=[info.subprotocol],
            connect_factory=self._connect_factory,
        )
        self._connection.start()

        try:
            async with asyncio.timeout(self.config.handshake_timeout):
                await self._settled.wait()
        except TimeoutError:
            self._fail(f"No session acknowledgement within {self.config.handshake_timeout}s")
        return self.state is SessionState.CONNECTED

    async def send_input(self, data: Union[bytes, str]) -> bool:
        """
        Send keystrokes to the remote shell.

        Returns:
            False if the session is not connected or the frame was dropped
        """
        if not self.is_connected or self._connection is None:
            return False
        if isinstance(data, str):
            data = data.encode('utf-8')
        return await self._connection.send(TerminalFrame.input_bytes(self.session_id, data))

    def request_resize(self, cols: int, rows: int) -> None:
        """
        Record a new viewport size; forwarded after the settle window.

        Raises:
            ValueError: If either dimension is below 1
        """
        if cols < 1 or rows < 1:
            raise ValueError(f"Invalid terminal size {cols}x{rows}")
        self.cols = cols
        self.rows = rows
        if self.is_connected:
            self._resizer.trigger(cols, rows)

    async def close(self, exit_code: int = 0) -> None:
        """
        Close the session, telling the server when connected.

        Safe to call in any state.
        """
        if self.is_finished:
            return

        connection = self._connection
        if self.is_connected and connection is not None:
            await connection.send(TerminalFrame.close(self.session_id, exit_code))

        if self.is_finished:
            return
        self.exit_code = exit_code
        self._transition(SessionState.CLOSED)
        self._teardown()
        if connection is not None:
            await connection.wait_closed()

    def abort(self) -> None:
        """Close immediately without notifying the server."""
        if self.is_finished:
            return
        self._transition(SessionState.CLOSED)
        self._teardown()

    async def wait_settled(self) -> SessionState:
        """Wait until the session leaves CONNECTING."""
        await self._settled.wait()
        return self.state

    # Connection callbacks

    async def _on_connect(self) -> None:
        if self.state is not SessionState.CONNECTING:
            return
        frame = TerminalFrame.start(
            stack_name=self.stack_name,
            service=self.service,
            cols=self.cols,
            rows=self.rows,
            container=self.container,
            shell=self.shell,
        )
        if not await self._connection.send(frame):
            self._fail("Failed to send start frame")

    def _on_disconnect(self) -> None:
        if self.state in _LIVE_STATES:
            self._fail("Connection lost")

    def _on_protocol_error(self, raw: str, error: Exception) -> None:
        logger.warning(f"Dropped malformed terminal frame on {self.label}: {error}")

    def _on_frame(self, raw: dict) -> None:
        if self.is_finished:
            return

        try:
            frame = TerminalFrame.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Dropped unrecognized terminal frame on {self.label}: {e.error_count()} error(s)")
            return

        if frame.type == "success":
            self._on_success(frame)
            return

        if frame.session_id is not None and frame.session_id != self.session_id:
            logger.warning(
                f"Dropped {frame.type} frame for session {frame.session_id} "
                f"(this session is {self.session_id})"
            )
            return

        if frame.type == "error":
            self._fail(frame.error or "Terminal error")
        elif frame.type == "close":
            self.exit_code = frame.exit_code
            self._transition(SessionState.CLOSED)
            self._teardown()
        elif frame.type == "output":
            self._on_output_frame(frame)
        else:
            logger.warning(f"Dropped unexpected {frame.type} frame from server on {self.label}")

    def _on_success(self, frame: TerminalFrame) -> None:
        if self.state is not SessionState.CONNECTING:
            self._fail(f"Unexpected success frame while {self.state.value}")
            return
        if not frame.session_id:
            self._fail("Success frame without session_id")
            return

        self.session_id = frame.session_id
        self._transition(SessionState.CONNECTED)
        logger.info(f"Terminal {self.label} connected (session {self.session_id})")

        loop = asyncio.get_running_loop()
        self._initial_resize = loop.call_later(
            self.config.initial_resize_delay,
            self._send_initial_resize,
        )

    def _on_output_frame(self, frame: TerminalFrame) -> None:
        if not self.is_connected:
            logger.warning(f"Dropped output before session start on {self.label}")
            return
        try:
            data = frame.output_bytes()
        except ValueError as e:
            logger.warning(f"Dropped undecodable output on {self.label}: {e}")
            return

        if self.on_output is None:
            return
        try:
            result = self.on_output(data)
            if inspect.isawaitable(result):
                self._spawn(result)
        except Exception as e:
            logger.error(f"Terminal output handler failed: {e}", exc_info=True)

    # Internals

    def _send_initial_resize(self) -> None:
        self._initial_resize = None
        if self.is_connected:
            self._spawn(self._send_resize(self.cols, self.rows))

    async def _send_resize(self, cols: int, rows: int) -> bool:
        if not self.is_connected or self._connection is None:
            return False
        return await self._connection.send(TerminalFrame.resize(self.session_id, cols, rows))

    def _spawn(self, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _fail(self, reason: str) -> None:
        if self.is_finished:
            return
        logger.warning(f"Terminal {self.label} failed: {reason}")
        self.error = reason
        self._transition(SessionState.ERROR)
        self._teardown()

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)

        previous = self.state
        self.state = target

        if target is SessionState.CONNECTING:
            metrics.record_terminal_session_started()
        elif previous in _LIVE_STATES and target not in _LIVE_STATES:
            metrics.record_terminal_session_ended()

        if target is not SessionState.CONNECTING:
            self._settled.set()

        if self.on_state_change is not None:
            try:
                self.on_state_change(self)
            except Exception as e:
                logger.error(f"Terminal state listener failed: {e}", exc_info=True)

    def _teardown(self) -> None:
        if self._initial_resize is not None:
            self._initial_resize.cancel()
            self._initial_resize = None
        self._resizer.close()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if self._connection is not None:
            self._connection.close()
