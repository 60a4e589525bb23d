"""
Terminal Tab Registry - Bounded set of open terminal tabs.

Owns every TerminalSession opened through the terminal panel:
- At most max_terminals (10) tabs at once
- One tab per (server_id, stack_name, service, container) target;
  opening an open target re-activates its tab
- Closing a tab closes its session and activates the neighbour
  (previous index, else first remaining, else none)

Persistence Model:
- terminal_panel_state -> {is_open, height}; tabs themselves are not
  persisted

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .storage import StateStore, StorageError
from .terminal_session import TerminalSession
from ..api.client import BerthClient
from ..config import StreamConfig
from ..observability import metrics

logger = logging.getLogger(__name__)

__all__ = [
    "TabRegistry",
    "TerminalTab",
    "TerminalLimitError",
    "TabNotFoundError",
    "PANEL_STATE_KEY",
]

PANEL_STATE_KEY = "terminal_panel_state"


class TerminalLimitError(Exception):
    """Raised when opening a tab would exceed the terminal cap."""

    def __init__(self, limit: int):
        super().__init__(f"Maximum of {limit} terminals reached")
        self.limit = limit


class TabNotFoundError(KeyError):
    """Raised when a tab id is not open."""
    pass


@dataclass
class TerminalTab:
    """
    UI grouping of one terminal session.

    Attributes:
        id: Tab identifier
        server_id, stack_name, service, container: Attach target
        label: "service" or "service:container"
        session: The tab's terminal session
    """
    id: str
    server_id: int
    stack_name: str
    service: str
    container: Optional[str]
    label: str
    session: TerminalSession = field(repr=False, compare=False)

    @property
    def target(self) -> tuple:
        return (self.server_id, self.stack_name, self.service, self.container)


def tab_label(service: str, container: Optional[str] = None) -> str:
    return f"{service}:{container}" if container else service


class TabRegistry:
    """
    Owner of the terminal tab list and the panel preference.

    Concurrency Model:
    - Mutations are synchronous; session start/close run as tasks owned
      by the registry and are cancelled on close()
    """

    __slots__ = (
        'client',
        'store',
        'config',
        'is_open',
        'height',
        'active_tab_id',
        '_tabs',
        '_connect_factory',
        '_tasks',
        '_closed',
    )

    def __init__(
        self,
        client: BerthClient,
        store: Optional[StateStore] = None,
        *,
        config: Optional[StreamConfig] = None,
        connect_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Initialize registry and restore the panel preference.

        Args:
            client: REST client used for terminal negotiation
            store: Durable store for the panel preference
            config: Stream configuration (defaults from environment)
            connect_factory: WebSocket dialer passed to every session
        """
        self.client = client
        self.store = store
        self.config = config or StreamConfig()

        self.is_open = False
        self.height = self.config.default_panel_height
        self.active_tab_id: Optional[str] = None

        self._tabs: list[TerminalTab] = []
        self._connect_factory = connect_factory
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

        self._load_panel_state()

    @property
    def tabs(self) -> list[TerminalTab]:
        """Open tabs in opening order."""
        return list(self._tabs)

    @property
    def active_tab(self) -> Optional[TerminalTab]:
        return self._find(self.active_tab_id) if self.active_tab_id else None

    def get_tab(self, tab_id: str) -> TerminalTab:
        """
        Raises:
            TabNotFoundError: If the tab is not open
        """
        tab = self._find(tab_id)
        if tab is None:
            raise TabNotFoundError(tab_id)
        return tab

    def get_session(self, tab_id: str) -> TerminalSession:
        return self.get_tab(tab_id).session

    def open_terminal(
        self,
        server_id: int,
        stack_name: str,
        service: str,
        container: Optional[str] = None,
        *,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ) -> TerminalTab:
        """
        Open (or re-activate) a terminal tab and start its session.

        The session starts in the background when an event loop is running;
        otherwise it stays idle for the caller to start.

        Raises:
            TerminalLimitError: If max_terminals tabs are already open
        """
        if self._closed:
            raise RuntimeError("Tab registry is closed")

        target = (server_id, stack_name, service, container)
        for tab in self._tabs:
            if tab.target == target:
                self.active_tab_id = tab.id
                self._set_open(True)
                return tab

        if len(self._tabs) >= self.config.max_terminals:
            raise TerminalLimitError(self.config.max_terminals)

        session = TerminalSession(
            self.client,
            server_id,
            stack_name,
            service,
            container,
            config=self.config,
            connect_factory=self._connect_factory,
        )
        tab = TerminalTab(
            id=f"terminal-{uuid.uuid4().hex[:12]}",
            server_id=server_id,
            stack_name=stack_name,
            service=service,
            container=container,
            label=tab_label(service, container),
            session=session,
        )
        self._tabs.append(tab)
        self.active_tab_id = tab.id
        metrics.set_terminal_tabs_open(len(self._tabs))
        logger.info(f"Opened terminal tab {tab.label} on {stack_name} (server {server_id})")

        self._spawn(lambda: session.start(cols, rows))
        self._set_open(True)
        return tab

    def close_terminal(self, tab_id: str) -> bool:
        """
        Close a tab and its session.

        Returns:
            True if the tab was open
        """
        index = next((i for i, t in enumerate(self._tabs) if t.id == tab_id), None)
        if index is None:
            return False

        tab = self._tabs.pop(index)
        if not self._spawn(tab.session.close):
            tab.session.abort()

        if self.active_tab_id == tab_id:
            if self._tabs:
                self.active_tab_id = self._tabs[index - 1 if index > 0 else 0].id
            else:
                self.active_tab_id = None

        metrics.set_terminal_tabs_open(len(self._tabs))
        logger.info(f"Closed terminal tab {tab.label}")

        if not self._tabs:
            self._set_open(False)
        return True

    def set_active_tab(self, tab_id: str) -> None:
        self.active_tab_id = self.get_tab(tab_id).id

    def toggle_panel(self) -> bool:
        """Flip panel visibility; returns the new state."""
        self._set_open(not self.is_open)
        return self.is_open

    def set_panel_height(self, height: int) -> int:
        """Set panel height, clamped to the configured bounds; returns the value stored."""
        clamped = max(self.config.min_panel_height, min(int(height), self.config.max_panel_height))
        if clamped != self.height:
            self.height = clamped
            self._save_panel_state()
        return clamped

    def close(self) -> None:
        """Abort every session and cancel pending tasks."""
        if self._closed:
            return
        self._closed = True

        for tab in self._tabs:
            tab.session.abort()
        self._tabs.clear()
        self.active_tab_id = None
        metrics.set_terminal_tabs_open(0)

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def aclose(self) -> None:
        """Close every session gracefully, then tear down."""
        sessions = [tab.session for tab in self._tabs]
        for session in sessions:
            await session.close()
        self.close()

    # Internals

    def _find(self, tab_id: str) -> Optional[TerminalTab]:
        return next((t for t in self._tabs if t.id == tab_id), None)

    def _spawn(self, factory: Callable[[], Any]) -> bool:
        """Run factory() as a registry-owned task. False without a running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False

        task = loop.create_task(factory())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return True

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Terminal task failed: {exc}", exc_info=exc)

    def _set_open(self, is_open: bool) -> None:
        if is_open != self.is_open:
            self.is_open = is_open
            self._save_panel_state()

    def _load_panel_state(self) -> None:
        if self.store is None:
            return
        try:
            state = self.store.load(PANEL_STATE_KEY)
        except StorageError as e:
            metrics.record_storage_error('load')
            logger.error(f"Failed to load terminal panel state: {e}")
            return

        if not isinstance(state, dict):
            return
        self.is_open = bool(state.get('is_open', False))
        try:
            height = int(state.get('height', self.config.default_panel_height))
        except (TypeError, ValueError):
            height = self.config.default_panel_height
        self.height = max(self.config.min_panel_height, min(height, self.config.max_panel_height))

    def _save_panel_state(self) -> None:
        if self.store is None or self._closed:
            return
        try:
            self.store.save(PANEL_STATE_KEY, {'is_open': self.is_open, 'height': self.height})
        except StorageError as e:
            metrics.record_storage_error('save')
            logger.error(f"Failed to save terminal panel state: {e}")
