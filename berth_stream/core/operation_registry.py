"""
Operation Registry - Process-wide store of remote operations.

Complete implementation with:
- One dedicated stream Connection per incomplete operation
- Append-only, arrival-ordered log per operation
- Per-operation Event Aggregator fed by the stream
- Reconciliation against the server's running-operations list
- Retention cap on completed operations, in memory and in storage
- Debounced change notification for observers

Reconciliation (every poll_interval):
1. Server-reported operation not known locally → register; if incomplete,
   open its stream
2. Locally incomplete operation absent from the server list → mark
   complete, close its stream (not an error: finished or lost)
3. Present in both → merge server metadata, keep the local log;
   completion is never undone

Persistence Model:
- operations_state -> [{operation_id, operation, logs}], completed only,
  most recent first, truncated to retention_cap

Engineering Standards:
- All state changes are synchronous methods on the event loop; no locks
- Poll and storage failures are logged and swallowed
- A teardown guard suppresses every callback after close()

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import ValidationError

from .connection_manager import ConnectionHandlers, ConnectionManager
from .debounce import Debouncer
from .event_aggregator import EventAggregator
from .frames import StreamMessage
from .storage import StateStore, StorageError
from ..api.client import BerthClient, PollError, RunningOperationInfo, as_utc
from ..config import StreamConfig
from ..observability import metrics

logger = logging.getLogger(__name__)

__all__ = ["OperationRegistry", "Operation", "OperationNotFoundError", "OPERATIONS_STATE_KEY"]

OPERATIONS_STATE_KEY = "operations_state"


class OperationNotFoundError(KeyError):
    """Raised when an operation id is not tracked by the registry."""
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value)))


@dataclass
class Operation:
    """
    One remote command execution.

    Attributes:
        operation_id: Unique operation identifier
        server_id: Managed host the command runs on
        stack_name: Compose stack the command targets
        command: Command line, e.g. "up -d"
        start_time: When the operation started (UTC)
        last_message_at: Arrival time of the latest stream message
        is_incomplete: True until a terminal event; never flips back
        message_count: Number of stream messages seen
        summary: Short outcome text
    """
    operation_id: str
    server_id: int
    stack_name: str
    command: str = ""
    start_time: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    is_incomplete: bool = True
    message_count: int = 0
    summary: Optional[str] = None

    def __post_init__(self):
        self.start_time = _parse_time(self.start_time) or _utc_now()
        self.last_message_at = _parse_time(self.last_message_at)

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dictionary."""
        data = asdict(self)
        data['start_time'] = self.start_time.isoformat()
        data['last_message_at'] = (
            self.last_message_at.isoformat() if self.last_message_at else None
        )
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Operation:
        """Deserialize from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_info(cls, info: RunningOperationInfo) -> Operation:
        return cls(**info.model_dump())


_MERGE_FIELDS = ('server_id', 'stack_name', 'command', 'start_time', 'summary')
_UPDATABLE_FIELDS = frozenset(f.name for f in fields(Operation)) - {'operation_id'}

OperationLike = Union[Operation, RunningOperationInfo, dict]


class OperationRegistry:
    """
    Owner of every known Operation and its stream Connection.

    Lifecycle:
    1. Construct → hydrate completed operations from storage (no connections)
    2. start() → poll loop begins (first poll immediately)
    3. add_operation / stream frames / polls mutate state
    4. close() → poll loop cancelled, every connection closed, timers cleared

    Invariants:
    - At most one live Connection per incomplete Operation
    - is_incomplete only ever goes True → False
    - A completed Operation's log and aggregate never change again
    """

    __slots__ = (
        'client',
        'store',
        'config',
        'stats',
        '_operations',
        '_logs',
        '_aggregators',
        '_connections',
        '_hidden',
        '_listeners',
        '_notifier',
        '_poll_task',
        '_connect_factory',
        '_closed',
    )

    def __init__(
        self,
        client: Optional[BerthClient] = None,
        store: Optional[StateStore] = None,
        *,
        config: Optional[StreamConfig] = None,
        connect_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Initialize registry and hydrate persisted operations.

        Args:
            client: REST client for reconciliation polls (no polling when None)
            store: Durable store for completed operations (no persistence when None)
            config: Stream configuration (defaults from environment)
            connect_factory: WebSocket dialer passed to every ConnectionManager
        """
        self.client = client
        self.store = store
        self.config = config or StreamConfig()

        self._operations: dict[str, Operation] = {}
        self._logs: dict[str, list[StreamMessage]] = {}
        self._aggregators: dict[str, EventAggregator] = {}
        self._connections: dict[str, ConnectionManager] = {}
        self._hidden: set[str] = set()
        self._listeners: list[Callable[[list[Operation]], Any]] = []
        self._notifier = Debouncer(self.config.notify_debounce, self._notify_listeners)
        self._poll_task: Optional[asyncio.Task] = None
        self._connect_factory = connect_factory
        self._closed = False

        self.stats = {
            'polls': 0,
            'poll_failures': 0,
            'storage_failures': 0,
            'protocol_errors': 0,
        }

        self._hydrate()

    # Read-only views

    @property
    def operations(self) -> list[Operation]:
        """Visible operations, newest start_time first."""
        return sorted(
            (op for op_id, op in self._operations.items() if op_id not in self._hidden),
            key=lambda op: op.start_time,
            reverse=True,
        )

    @property
    def all_operations(self) -> list[Operation]:
        """All operations including hidden ones, newest start_time first."""
        return sorted(self._operations.values(), key=lambda op: op.start_time, reverse=True)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def get_operation(self, operation_id: str) -> Operation:
        """
        Raises:
            OperationNotFoundError: If the id is not tracked
        """
        try:
            return self._operations[operation_id]
        except KeyError:
            raise OperationNotFoundError(operation_id) from None

    def get_operation_logs(self, operation_id: str) -> list[StreamMessage]:
        """Copy of the operation's log in arrival order."""
        self.get_operation(operation_id)
        return list(self._logs.get(operation_id, ()))

    def get_aggregator(self, operation_id: str) -> EventAggregator:
        self.get_operation(operation_id)
        return self._aggregators[operation_id]

    def get_connection(self, operation_id: str) -> Optional[ConnectionManager]:
        """Live stream connection for the operation, if any."""
        return self._connections.get(operation_id)

    def is_hidden(self, operation_id: str) -> bool:
        return operation_id in self._hidden

    # Mutations

    def add_operation(self, operation: OperationLike, *, connect: bool = True) -> Operation:
        """
        Register an operation; open its stream if it is incomplete.

        Registering an id that is already tracked returns the existing record
        unchanged.

        Args:
            operation: Operation, poll entry or plain dict
            connect: Open a stream connection for an incomplete operation
        """
        if self._closed:
            raise RuntimeError("Registry is closed")

        op = self._coerce(operation)
        existing = self._operations.get(op.operation_id)
        if existing is not None:
            return existing

        self._track(op)
        logger.info(
            f"Tracking operation {op.operation_id} ({op.stack_name}: {op.command}) "
            f"incomplete={op.is_incomplete}"
        )
        if op.is_incomplete and connect:
            self._open_stream(op)

        self._changed()
        return op

    def add_operation_log(
        self,
        operation_id: str,
        message: Union[StreamMessage, dict],
    ) -> Optional[StreamMessage]:
        """
        Append one message to an operation's log.

        A terminal message completes the operation and closes its stream.
        Messages for an already-completed operation are ignored.

        Returns:
            The appended message, or None if it was ignored

        Raises:
            OperationNotFoundError: If the id is not tracked
            pydantic.ValidationError: If a dict message is malformed
        """
        op = self.get_operation(operation_id)
        if not isinstance(message, StreamMessage):
            message = StreamMessage.model_validate(message)

        if not self._append(op, message):
            return None

        self._changed()
        return message

    def update_operation(self, operation_id: str, **changes: Any) -> Operation:
        """
        Update operation metadata in place.

        Setting is_incomplete=False completes the operation; setting it back
        to True on a completed operation is ignored.

        Raises:
            OperationNotFoundError: If the id is not tracked
            TypeError: For a field that cannot be updated
        """
        op = self.get_operation(operation_id)
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        complete = changes.pop('is_incomplete', None) is False
        if not op.is_incomplete and changes:
            logger.debug(f"Ignoring update of completed operation {operation_id}")
            changes = {}

        for name, value in changes.items():
            if name in ('start_time', 'last_message_at'):
                value = _parse_time(value) or getattr(op, name)
            setattr(op, name, value)

        if complete:
            self._complete(op, reason='manual')

        self._changed()
        return op

    def mark_operation_complete(self, operation_id: str) -> Operation:
        """Complete an operation without a terminal message."""
        op = self.get_operation(operation_id)
        if self._complete(op, reason='manual'):
            self._changed()
        return op

    def remove_operation(self, operation_id: str) -> bool:
        """
        Forget an operation and close its stream.

        Returns:
            True if it was tracked
        """
        op = self._operations.pop(operation_id, None)
        if op is None:
            return False

        self._close_stream(operation_id)
        self._logs.pop(operation_id, None)
        self._aggregators.pop(operation_id, None)
        self._hidden.discard(operation_id)
        logger.info(f"Removed operation {operation_id}")

        self._changed()
        return True

    def hide_operation(self, operation_id: str) -> None:
        """Hide from ``operations`` without removing."""
        self.get_operation(operation_id)
        if operation_id not in self._hidden:
            self._hidden.add(operation_id)
            self._notifier.trigger()

    def show_operation(self, operation_id: str) -> None:
        if operation_id in self._hidden:
            self._hidden.discard(operation_id)
            self._notifier.trigger()

    def subscribe(self, listener: Callable[[list[Operation]], Any]) -> Callable[[], None]:
        """
        Register a change listener.

        Bursts of changes are coalesced; the listener receives the visible
        operations list once per burst.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Reconciliation

    def start(self) -> OperationRegistry:
        """Start the poll loop. Must run inside an event loop."""
        if self._closed:
            raise RuntimeError("Registry is closed")
        if self.client is None:
            logger.warning("No REST client configured: reconciliation disabled")
            return self
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(
                self._poll_loop(),
                name="operation-registry-poll"
            )
        return self

    async def refresh(self) -> bool:
        """
        Run one reconciliation poll now.

        Returns:
            True if the poll succeeded and was applied
        """
        if self._closed or self.client is None:
            return False

        known_before = set(self._operations)
        self.stats['polls'] += 1

        try:
            infos = await self.client.list_running_operations()
        except PollError as e:
            self.stats['poll_failures'] += 1
            metrics.record_poll_failure()
            logger.warning(f"Reconciliation poll failed: {e}")
            return False

        if self._closed:
            return False

        self._reconcile(infos, known_before)
        return True

    async def _poll_loop(self) -> None:
        try:
            while not self._closed:
                try:
                    await self.refresh()
                except Exception as e:
                    logger.error(f"Unexpected error in reconciliation: {e}", exc_info=True)
                await asyncio.sleep(self.config.poll_interval)
        except asyncio.CancelledError:
            logger.debug("Reconciliation poll loop cancelled")

    def _reconcile(self, infos: Iterable[RunningOperationInfo], known_before: set[str]) -> None:
        """
        Apply one poll result.

        Only operations known when the poll was issued can be completed by
        their absence; anything registered meanwhile is left alone.
        """
        reported: set[str] = set()

        for info in infos:
            reported.add(info.operation_id)
            op = self._operations.get(info.operation_id)

            if op is None:
                op = Operation.from_info(info)
                self._track(op)
                logger.info(f"Discovered running operation {op.operation_id} ({op.stack_name})")
                if op.is_incomplete:
                    self._open_stream(op)
                continue

            self._merge(op, info)

        for op in list(self._operations.values()):
            if (
                op.is_incomplete
                and op.operation_id not in reported
                and op.operation_id in known_before
            ):
                logger.info(f"Operation {op.operation_id} no longer running on server")
                self._complete(op, reason='poll')

        self._changed()

    def _merge(self, op: Operation, info: RunningOperationInfo) -> None:
        """Fold server metadata into a tracked operation, keeping the local log."""
        if not op.is_incomplete:
            return

        for name in _MERGE_FIELDS:
            value = getattr(info, name)
            if value is not None:
                setattr(op, name, value)

        op.message_count = max(op.message_count, info.message_count)
        if info.last_message_at and (
            op.last_message_at is None or info.last_message_at > op.last_message_at
        ):
            op.last_message_at = info.last_message_at

        if not info.is_incomplete:
            self._complete(op, reason='poll')
        elif op.operation_id not in self._connections:
            self._open_stream(op)

    # Internals

    def _coerce(self, operation: OperationLike) -> Operation:
        if isinstance(operation, Operation):
            return operation
        if isinstance(operation, RunningOperationInfo):
            return Operation.from_info(operation)
        return Operation.from_dict(operation)

    def _track(self, op: Operation) -> None:
        self._operations[op.operation_id] = op
        self._logs.setdefault(op.operation_id, [])
        self._aggregators.setdefault(
            op.operation_id, EventAggregator(self.config.free_text_limit)
        )

    def _append(self, op: Operation, message: StreamMessage) -> bool:
        if not op.is_incomplete:
            logger.debug(f"Ignoring {message.type} message for completed operation {op.operation_id}")
            return False

        self._logs[op.operation_id].append(message)
        self._aggregators[op.operation_id].process_event(message)
        op.message_count += 1
        op.last_message_at = _utc_now()

        if message.is_terminal:
            if message.message:
                op.summary = message.message
            self._complete(op, reason='complete')
        return True

    def _complete(self, op: Operation, reason: str) -> bool:
        """Flip is_incomplete and drop the stream. Returns False if already complete."""
        if not op.is_incomplete:
            return False

        op.is_incomplete = False
        self._close_stream(op.operation_id)
        metrics.record_operation_completed(reason)
        logger.info(f"Operation {op.operation_id} completed ({reason})")
        return True

    def _open_stream(self, op: Operation) -> Optional[ConnectionManager]:
        if self._closed or op.operation_id in self._connections:
            return self._connections.get(op.operation_id)

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop: not streaming operation {op.operation_id}")
            return None

        url = self.config.operation_stream_url(op.server_id, op.stack_name, op.operation_id)
        operation_id = op.operation_id

        handlers = ConnectionHandlers(
            on_message=lambda frame: self._on_frame(operation_id, frame),
            on_protocol_error=lambda raw, exc: self._on_protocol_error(operation_id, raw, exc),
        )
        connection = ConnectionManager(
            url,
            handlers,
            auto_reconnect=True,
            reconnect_interval=self.config.reconnect_interval,
            connect_factory=self._connect_factory,
        )
        self._connections[operation_id] = connection
        connection.start()
        logger.debug(f"Opened stream for operation {operation_id}: {url}")
        return connection

    def _close_stream(self, operation_id: str) -> None:
        connection = self._connections.pop(operation_id, None)
        if connection is not None:
            connection.close()

    def _on_frame(self, operation_id: str, frame: dict) -> None:
        if self._closed:
            return
        op = self._operations.get(operation_id)
        if op is None:
            return

        try:
            message = StreamMessage.model_validate(frame)
        except ValidationError as e:
            self._on_protocol_error(operation_id, str(frame), e)
            return

        if self._append(op, message):
            self._changed()

    def _on_protocol_error(self, operation_id: str, raw: str, error: Exception) -> None:
        """Record an undecodable frame as a free-text log line."""
        if self._closed:
            return
        op = self._operations.get(operation_id)
        if op is None:
            return

        self.stats['protocol_errors'] += 1
        logger.warning(f"Protocol error on operation {operation_id}: {error}")
        if self._append(op, StreamMessage.log(f"Unrecognized frame: {raw}")):
            self._changed()

    def _changed(self) -> None:
        """Evict, persist, update gauges and schedule a listener notification."""
        if self._closed:
            return
        self._evict_completed()
        metrics.set_operations_tracked(len(self._operations))
        self._persist()
        self._notifier.trigger()

    def _completed_newest_first(self) -> list[Operation]:
        return sorted(
            (op for op in self._operations.values() if not op.is_incomplete),
            key=lambda op: op.start_time,
            reverse=True,
        )

    def _evict_completed(self) -> None:
        """Forget completed operations beyond retention_cap, oldest first."""
        for op in self._completed_newest_first()[self.config.retention_cap:]:
            operation_id = op.operation_id
            del self._operations[operation_id]
            self._logs.pop(operation_id, None)
            self._aggregators.pop(operation_id, None)
            self._hidden.discard(operation_id)
            logger.debug(f"Evicted completed operation {operation_id} (retention cap)")

    def _notify_listeners(self) -> None:
        if self._closed:
            return
        snapshot = self.operations
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Operations listener failed: {e}", exc_info=True)

    def _persist(self) -> None:
        if self.store is None:
            return

        completed = self._completed_newest_first()[:self.config.retention_cap]

        state = [
            {
                'operation_id': op.operation_id,
                'operation': op.to_dict(),
                'logs': [m.to_wire() for m in self._logs.get(op.operation_id, ())],
            }
            for op in completed
        ]

        try:
            self.store.save(OPERATIONS_STATE_KEY, state)
        except StorageError as e:
            self.stats['storage_failures'] += 1
            metrics.record_storage_error('save')
            logger.error(f"Failed to persist operations: {e}")

    def _hydrate(self) -> None:
        if self.store is None:
            return

        try:
            state = self.store.load(OPERATIONS_STATE_KEY)
        except StorageError as e:
            self.stats['storage_failures'] += 1
            metrics.record_storage_error('load')
            logger.error(f"Failed to load persisted operations: {e}")
            return

        if not isinstance(state, list):
            if state is not None:
                logger.warning("Ignoring persisted operations: not a list")
            return

        for entry in state[:self.config.retention_cap]:
            try:
                op = Operation.from_dict(entry['operation'])
                logs = [StreamMessage.model_validate(m) for m in entry.get('logs') or ()]
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping corrupt persisted operation: {e}")
                continue

            op.is_incomplete = False
            self._track(op)
            self._logs[op.operation_id] = logs
            aggregator = self._aggregators[op.operation_id]
            for message in logs:
                aggregator.process_event(message)

        if self._operations:
            logger.info(f"Restored {len(self._operations)} completed operations")
        metrics.set_operations_tracked(len(self._operations))

    # Teardown

    def close(self) -> None:
        """Cancel polling, close every connection and clear timers."""
        if self._closed:
            return
        self._closed = True

        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()

        for operation_id in list(self._connections):
            self._close_stream(operation_id)

        self._notifier.close()
        self._listeners.clear()
        logger.info("Operation registry closed")

    async def aclose(self) -> None:
        """close() and wait for the poll task and sockets to finish."""
        connections = list(self._connections.values())
        task = self._poll_task
        self.close()
        for connection in connections:
            await connection.wait_closed()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
