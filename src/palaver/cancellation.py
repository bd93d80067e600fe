"""Cooperative cancellation.

A :class:`CancelToken` is shared by the response bridge, the runner and the
provider adapter of one chat invocation.  Cancelling it sets a flag that
the runner checks at every suspension point and runs the registered abort
callbacks, which the adapters use to close the vendor's HTTP stream instead
of draining it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

AbortCallback = Callable[[], Awaitable[None] | None]


class CancelToken:
    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self._callbacks: list[AbortCallback] = []
        self._pending: set[asyncio.Task] = set()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation.  Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        logger.info(f"Cancellation requested: {reason or 'no reason given'}")
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)

    def add_abort_callback(self, callback: AbortCallback) -> Callable[[], None]:
        """Register *callback* to run on cancellation.

        If the token is already cancelled the callback runs immediately.
        Returns a function that unregisters the callback.
        """
        if self._cancelled:
            self._run_callback(callback)
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _run_callback(self, callback: AbortCallback) -> None:
        try:
            result = callback()
        except Exception as e:
            logger.warning(f"Abort callback raised: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Abort callback raised: {task.exception()}")
