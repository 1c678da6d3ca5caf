"""
SSH and SFTP access to a deployed server host.

A RemoteSession owns two independent connections to the same host: a
file-transfer channel (SFTP) and a command channel (SSH exec). Each is opened
and closed on its own. paramiko is blocking, so every call is moved to a
worker thread; uploads are started in the executor and polled for completion.
"""

from __future__ import annotations

import asyncio
import stat
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path

import paramiko

from pnr_ops.errors import FailedPreconditionError, UnavailableError
from pnr_ops.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SSH_PORT = 22
DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_CONNECT_TIMEOUT = 30.0


class RemoteSession:
    """
    File-transfer and command channels to one host.

    Example:
        >>> session = RemoteSession("pnr.westus3.cloudapp.azure.com", 22, "pnr", "secret")
        >>> async with session.shell():
        ...     output = await session.run_command("uname -a")
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_SSH_PORT,
        username: str = "",
        password: str = "",
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        """
        Initialize the session. No connection is made until a channel is opened.

        Args:
            host: Host name or address.
            port: SSH port, shared by both channels.
            username: Login user.
            password: Login password.
            connect_timeout: TCP connect timeout in seconds.
            poll_interval: Upload completion polling interval in seconds.
            client_factory: Creates SSH clients (injectable for tests).
        """
        self.host = host
        self.port = port
        self.username = username
        self._password = password
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self._client_factory = client_factory

        self._transfer_client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._shell_client: paramiko.SSHClient | None = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_transfer_open(self) -> bool:
        return self._sftp is not None

    @property
    def is_shell_open(self) -> bool:
        return self._shell_client is not None

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def _connect(self) -> paramiko.SSHClient:
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self._password,
                timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise UnavailableError(
                f"Could not connect to {self.address}: {e}",
                details={"host": self.host, "port": self.port},
            ) from e
        return client

    def _open_sftp(self) -> tuple[paramiko.SSHClient, paramiko.SFTPClient]:
        client = self._connect()
        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise UnavailableError(
                f"Could not open file transfer channel to {self.address}: {e}",
                details={"host": self.host, "port": self.port},
            ) from e
        return client, sftp

    async def open_transfer(self) -> None:
        """
        Open the file-transfer channel. No-op if already open.

        Raises:
            UnavailableError: If the host cannot be reached.
        """
        if self._sftp is not None:
            return
        self._transfer_client, self._sftp = await asyncio.to_thread(self._open_sftp)
        logger.info("File transfer channel opened", extra={"host": self.host, "port": self.port})

    async def close_transfer(self) -> None:
        """Close the file-transfer channel. No-op if not open."""
        sftp, client = self._sftp, self._transfer_client
        self._sftp = None
        self._transfer_client = None
        if sftp is not None:
            await asyncio.to_thread(sftp.close)
        if client is not None:
            await asyncio.to_thread(client.close)
            logger.debug("File transfer channel closed", extra={"host": self.host})

    async def open_shell(self) -> None:
        """
        Open the command channel. No-op if already open.

        Raises:
            UnavailableError: If the host cannot be reached.
        """
        if self._shell_client is not None:
            return
        self._shell_client = await asyncio.to_thread(self._connect)
        logger.info("Command channel opened", extra={"host": self.host, "port": self.port})

    async def close_shell(self) -> None:
        """Close the command channel. No-op if not open."""
        client = self._shell_client
        self._shell_client = None
        if client is not None:
            await asyncio.to_thread(client.close)
            logger.debug("Command channel closed", extra={"host": self.host})

    @asynccontextmanager
    async def transfer(self) -> AsyncIterator[RemoteSession]:
        """Open the file-transfer channel for the duration of the block."""
        await self.open_transfer()
        try:
            yield self
        finally:
            await self.close_transfer()

    @asynccontextmanager
    async def shell(self) -> AsyncIterator[RemoteSession]:
        """Open the command channel for the duration of the block."""
        await self.open_shell()
        try:
            yield self
        finally:
            await self.close_shell()

    async def close(self) -> None:
        """Close both channels."""
        await self.close_transfer()
        await self.close_shell()

    # -------------------------------------------------------------------------
    # File transfer
    # -------------------------------------------------------------------------

    def _require_sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            raise FailedPreconditionError(
                "File transfer channel is not open",
                details={"host": self.host},
            )
        return self._sftp

    async def upload_file(self, local_path: Path | str, remote_path: str) -> None:
        """
        Upload one file, overwriting the remote copy.

        The transfer runs in the default executor while this coroutine polls
        for completion, so the event loop stays responsive.

        Raises:
            FailedPreconditionError: If the transfer channel is not open.
            UnavailableError: If the transfer fails.
        """
        sftp = self._require_sftp()
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, sftp.put, str(local_path), remote_path)

        while not future.done():
            await asyncio.sleep(self.poll_interval)

        try:
            future.result()
        except (paramiko.SSHException, OSError) as e:
            raise UnavailableError(
                f"Failed to upload {local_path} to {remote_path}: {e}",
                details={"host": self.host, "remote_path": remote_path},
            ) from e

        logger.debug(
            "File uploaded",
            extra={"local_path": str(local_path), "remote_path": remote_path},
        )

    async def download_file(self, remote_path: str, local_path: Path | str) -> None:
        """
        Download one file, replacing the local copy.

        Raises:
            FailedPreconditionError: If the transfer channel is not open.
            UnavailableError: If the transfer fails.
        """
        sftp = self._require_sftp()
        local = Path(local_path)
        try:
            local.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(sftp.get, remote_path, str(local))
        except (paramiko.SSHException, OSError) as e:
            raise UnavailableError(
                f"Failed to download {remote_path}: {e}",
                details={"host": self.host, "remote_path": remote_path},
            ) from e

        logger.debug(
            "File downloaded",
            extra={"remote_path": remote_path, "local_path": str(local)},
        )

    def _make_directory_sync(self, sftp: paramiko.SFTPClient, remote_path: str) -> bool:
        try:
            sftp.mkdir(remote_path)
            return True
        except OSError as e:
            try:
                attrs = sftp.stat(remote_path)
            except OSError:
                logger.warning(
                    f"Could not create remote directory {remote_path}: {e}",
                    extra={"host": self.host},
                )
                return False
            if attrs.st_mode is not None and stat.S_ISDIR(attrs.st_mode):
                logger.debug(
                    "Remote directory already exists",
                    extra={"remote_path": remote_path},
                )
                return True
            logger.warning(
                f"Remote path exists and is not a directory: {remote_path}",
                extra={"host": self.host},
            )
            return False

    async def make_directory(self, remote_path: str) -> bool:
        """
        Create a remote directory if it does not exist.

        A directory that already exists counts as success.

        Returns:
            True if the directory exists afterwards, False if it could not be
            created (the failure is logged).

        Raises:
            FailedPreconditionError: If the transfer channel is not open.
            UnavailableError: If the connection fails during the request.
        """
        sftp = self._require_sftp()
        try:
            return await asyncio.to_thread(self._make_directory_sync, sftp, remote_path)
        except paramiko.SSHException as e:
            raise UnavailableError(
                f"Failed to create remote directory {remote_path}: {e}",
                details={"host": self.host, "remote_path": remote_path},
            ) from e

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def _run_sync(self, client: paramiko.SSHClient, command: str) -> tuple[int, str, str]:
        _stdin, stdout, stderr = client.exec_command(command)
        # Output must be drained before recv_exit_status() or the channel window can fill
        output = stdout.read().decode(errors="replace").strip()
        errors = stderr.read().decode(errors="replace").strip()
        exit_status = stdout.channel.recv_exit_status()
        return exit_status, output, errors

    async def run_command(self, command: str) -> str:
        """
        Run a command over the command channel.

        Returns:
            The command's standard output, stripped.

        Raises:
            FailedPreconditionError: If the command channel is not open.
            UnavailableError: If the command cannot be executed.
        """
        if self._shell_client is None:
            raise FailedPreconditionError(
                "Command channel is not open",
                details={"host": self.host},
            )

        try:
            exit_status, output, errors = await asyncio.to_thread(
                self._run_sync, self._shell_client, command
            )
        except (paramiko.SSHException, OSError) as e:
            raise UnavailableError(
                f"Failed to run remote command: {e}",
                details={"host": self.host, "command": command},
            ) from e

        if exit_status != 0:
            logger.warning(
                "Remote command exited with non-zero status",
                extra={"command": command, "exit_status": exit_status, "stderr": errors},
            )
        else:
            logger.debug("Remote command completed", extra={"command": command})
        return output
