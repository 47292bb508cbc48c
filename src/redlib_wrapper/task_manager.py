"""Structured lifecycle manager for the asyncio tasks an invocation owns."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named and anonymous tasks so every exit path can reap them.

    Agents spawn their helper tasks (stream drains, event printers) through a
    manager and call :meth:`cancel_all` from a ``finally`` block, which keeps
    cancellation structured even inside async generators where a task group
    cannot span a ``yield``.
    """

    def __init__(self, owner: str = "") -> None:
        self.owner = owner
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create a task for ``coro`` and register it.

        Named tasks replace any prior task with the same name (the old task
        is *not* cancelled automatically).  Anonymous tasks self-clean when
        they complete and have their failures logged.
        """
        task_name = f"{self.owner}:{name}" if self.owner and name else name
        task = asyncio.create_task(coro, name=task_name)
        if name is not None:
            self._named[name] = task
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)
            task.add_done_callback(self._log_anonymous_exception)
        return task

    def _log_anonymous_exception(self, task: asyncio.Task[Any]) -> None:
        """Log unhandled exceptions from anonymous tasks so they are not silently lost."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.anonymous.exception",
                extra={
                    "event": "task.anonymous.exception",
                    "owner": self.owner,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def _tracked(self) -> list[asyncio.Task[Any]]:
        return list(self._named.values()) + list(self._anonymous)

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        all_tasks = self._tracked()
        for task in all_tasks:
            if not task.done():
                task.cancel()
        # return_exceptions keeps one failed task from hiding the others.
        await asyncio.gather(*all_tasks, return_exceptions=True)
        self._named.clear()
        self._anonymous.clear()

    async def join(self) -> None:
        """Await all tracked tasks without cancelling them.

        The first exception raised by a tracked task propagates to the caller.
        """
        for task in self._tracked():
            if task.done() and task.cancelled():
                continue
            try:
                await task
            except asyncio.CancelledError:
                if task.cancelled():
                    continue
                raise
