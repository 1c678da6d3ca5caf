"""
Background execution of long-running operations.

Updates and deployments take minutes. OperationRunner starts them as asyncio
tasks so a caller (the CLI, or any front end) stays responsive, and allows at
most one operation per key at a time, e.g. one update per install directory
or one deployment per location.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from pnr_ops.errors import FailedPreconditionError
from pnr_ops.logging import get_logger

logger = get_logger(__name__)


class OperationRunner:
    """
    Runs keyed operations in the background, one per key.

    Example:
        >>> runner = OperationRunner()
        >>> runner.submit("/opt/pnr-server", updater.check_and_update())
        >>> updated = await runner.wait("/opt/pnr-server")
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def is_busy(self, key: str) -> bool:
        """Return True if an operation for `key` has not finished."""
        task = self._tasks.get(key)
        return task is not None and not task.done()

    @property
    def active_keys(self) -> list[str]:
        return [key for key in self._tasks if self.is_busy(key)]

    def submit(self, key: str, operation: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """
        Start `operation` as a background task.

        Must be called from a running event loop.

        Raises:
            FailedPreconditionError: If an operation for `key` is in flight.
                The rejected coroutine is closed without running.
        """
        if self.is_busy(key):
            operation.close()
            raise FailedPreconditionError(
                f"An operation is already running for {key}",
                details={"key": key},
            )

        task = asyncio.create_task(operation, name=f"pnr-ops:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda finished: self._on_done(key, finished))
        logger.info("Operation started", extra={"key": key})
        return task

    def _on_done(self, key: str, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            logger.info("Operation cancelled", extra={"key": key})
        elif task.exception() is not None:
            logger.error(
                f"Operation failed: {task.exception()}",
                extra={"key": key},
            )
        else:
            logger.info("Operation finished", extra={"key": key})

    async def wait(self, key: str) -> Any:
        """
        Wait for the operation for `key` and return its result.

        Returns:
            The operation's result, or None if nothing was submitted for `key`.
        """
        task = self._tasks.get(key)
        if task is None:
            return None
        try:
            return await task
        finally:
            if self._tasks.get(key) is task:
                del self._tasks[key]

    async def cancel_all(self) -> None:
        """Cancel every running operation and wait for them to finish."""
        keys = self.active_keys
        if keys:
            logger.info("Cancelling operations", extra={"keys": keys})
        tasks = [self._tasks[key] for key in keys]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
