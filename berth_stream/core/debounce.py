"""
Debouncer - coalesce bursts of triggers into one delayed call.

Used for change notifications (300ms window) and terminal resize
forwarding (settle window). Only the arguments of the last trigger in a
window are delivered.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

__all__ = ["Debouncer"]


class Debouncer:
    """
    Trailing-edge debouncer bound to the running event loop.

    Every ``trigger()`` restarts the window; the callback runs once the window
    elapses without a new trigger. Coroutine callbacks are scheduled as tasks
    owned by the debouncer so ``close()`` can stop them.

    Outside a running event loop ``trigger()`` calls through immediately.
    """

    __slots__ = ('delay', 'callback', '_handle', '_args', '_tasks', '_closed')

    def __init__(self, delay: float, callback: Callable[..., Any]):
        self.delay = delay
        self.callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._args: tuple = ()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> bool:
        """True while a call is scheduled but has not fired."""
        return self._handle is not None

    def trigger(self, *args: Any) -> None:
        """Schedule (or reschedule) the callback with ``args``."""
        if self._closed:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._invoke(args)
            return

        if self._handle is not None:
            self._handle.cancel()
        self._args = args
        self._handle = loop.call_later(self.delay, self._fire)

    def flush(self) -> None:
        """Fire a pending call now."""
        if self._handle is None:
            return
        self._handle.cancel()
        self._fire()

    def cancel(self) -> None:
        """Drop a pending call; later triggers still schedule."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._args = ()

    def close(self) -> None:
        """Cancel pending and in-flight calls and ignore further triggers."""
        self._closed = True
        self.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _fire(self) -> None:
        args = self._args
        self._handle = None
        self._args = ()
        self._invoke(args)

    def _invoke(self, args: tuple) -> None:
        try:
            result = self.callback(*args)
        except Exception as e:
            logger.error(f"Debounced callback failed: {e}", exc_info=True)
            return

        if inspect.isawaitable(result):
            try:
                task = asyncio.ensure_future(result)
            except RuntimeError:
                if inspect.iscoroutine(result):
                    result.close()
                logger.warning("Dropped debounced coroutine: no running event loop")
                return
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Debounced coroutine failed: {exc}", exc_info=exc)
