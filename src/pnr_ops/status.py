"""
Progress reporting shared by the update and deployment pipelines.

Every pipeline surfaces a stream of human-readable status lines. Callers hand
in a callback (plain function or coroutine function); StatusReporter logs
each line and forwards it, isolating the pipeline from callback failures.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable

from pnr_ops.logging import get_logger

StatusCallback = Callable[[str], Awaitable[None] | None]

logger = get_logger(__name__)


class StatusReporter:
    """
    Logs status lines and forwards them to an optional callback.

    Attributes:
        callback: Receiver of each status line, sync or async.
        source: Name attached to log records (e.g. "updater").
    """

    def __init__(
        self,
        callback: StatusCallback | None = None,
        *,
        source: str = "pnr_ops",
        log: logging.Logger | None = None,
    ) -> None:
        self.callback = callback
        self.source = source
        self._logger = log or logger
        self.messages: list[str] = []

    async def report(self, message: str, *, level: int = logging.INFO) -> None:
        """
        Record a status line, log it, and deliver it to the callback.

        A failing callback is logged and otherwise ignored.
        """
        self.messages.append(message)
        self._logger.log(level, message, extra={"source": self.source})

        if self.callback is None:
            return

        try:
            result = self.callback(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._logger.warning(f"Status callback failed: {e}")

    async def warning(self, message: str) -> None:
        """Report a line at warning level."""
        await self.report(message, level=logging.WARNING)

    async def error(self, message: str) -> None:
        """Report a line at error level."""
        await self.report(message, level=logging.ERROR)
