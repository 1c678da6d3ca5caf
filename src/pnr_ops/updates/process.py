"""
Local server process control.

Stopping is best-effort: every process whose name matches is asked to
terminate and given a bounded wait, then treated as stopped regardless. A
fixed settle delay follows so file handles are released before files are
replaced. Starting is fire-and-forget: the server is launched detached and
never waited on.
"""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path

import psutil

from pnr_ops.errors import FailedPreconditionError, UnavailableError
from pnr_ops.logging import get_logger

logger = get_logger(__name__)

DEFAULT_STOP_TIMEOUT = 30.0
DEFAULT_SETTLE_SECONDS = 2.0


def find_processes(process_name: str) -> list[psutil.Process]:
    """
    Find running processes with an exact name match.

    Args:
        process_name: Executable name (e.g. "godot_server").

    Returns:
        Matching processes; processes that vanish during enumeration are skipped.
    """
    matches: list[psutil.Process] = []
    for proc in psutil.process_iter(["name"]):
        try:
            if proc.info.get("name") == process_name:
                matches.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return matches


def _terminate_and_wait(proc: psutil.Process, wait_timeout: float) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=wait_timeout)
    except psutil.TimeoutExpired:
        logger.warning(
            "Server process did not exit within timeout",
            extra={"pid": proc.pid, "timeout": wait_timeout},
        )


class ProcessSupervisor:
    """
    Stops and starts the local server process.

    Attributes:
        settle_seconds: Pause after stopping before the caller proceeds.
    """

    def __init__(self, settle_seconds: float = DEFAULT_SETTLE_SECONDS) -> None:
        self.settle_seconds = settle_seconds

    async def stop(
        self,
        process_name: str,
        wait_timeout: float = DEFAULT_STOP_TIMEOUT,
    ) -> int:
        """
        Terminate every process named `process_name`.

        Per-process failures are logged and do not stop the remaining matches.

        Args:
            process_name: Process name to match.
            wait_timeout: Bounded wait for each process to exit.

        Returns:
            Number of matching processes found.
        """
        processes = await asyncio.to_thread(find_processes, process_name)

        for proc in processes:
            try:
                await asyncio.to_thread(_terminate_and_wait, proc, wait_timeout)
                logger.info(
                    "Server process stopped",
                    extra={"pid": proc.pid, "process_name": process_name},
                )
            except psutil.NoSuchProcess:
                logger.debug("Server process already exited", extra={"pid": proc.pid})
            except (psutil.AccessDenied, OSError) as e:
                logger.error(
                    f"Error stopping server process: {e}",
                    extra={"pid": proc.pid, "process_name": process_name},
                )

        # Give the OS a moment to release files held by the old process
        await asyncio.sleep(self.settle_seconds)

        return len(processes)

    def start(
        self,
        executable: Path | str,
        working_dir: Path | str,
        args: list[str] | None = None,
    ) -> int:
        """
        Launch the server detached from this process.

        Args:
            executable: Server executable path.
            working_dir: Working directory for the server.
            args: Fixed launch arguments.

        Returns:
            PID of the launched process.

        Raises:
            FailedPreconditionError: If the executable does not exist.
            UnavailableError: If the process cannot be launched.
        """
        executable = Path(executable)
        if not executable.exists():
            raise FailedPreconditionError(
                f"Server executable not found: {executable}",
                details={"executable": str(executable)},
            )

        command = [str(executable), *(args or [])]
        try:
            proc = subprocess.Popen(
                command,
                cwd=str(working_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise UnavailableError(
                f"Failed to start server: {e}",
                details={"command": command, "working_dir": str(working_dir)},
            ) from e

        logger.info(
            "Server process started",
            extra={"pid": proc.pid, "command": command},
        )
        return proc.pid
