"""
Deployment of the dedicated-server payload to a remote host.

deploy() mirrors the local payload directory to /home/{user}/{relative_path}
over SFTP, marks the files executable, and launches the server detached.
Individual upload and directory failures are reported and the mirror carries
on; nothing is rolled back. stop() and start() run a single remote command
each and always close their channel.
"""

from __future__ import annotations

import posixpath
import shlex
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from pnr_ops.errors import InvalidArgumentError, OpsError
from pnr_ops.logging import get_logger
from pnr_ops.registry import DeploymentTarget
from pnr_ops.remote.session import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SSH_PORT,
    RemoteSession,
)
from pnr_ops.results import DeploymentResult
from pnr_ops.status import StatusCallback, StatusReporter

if TYPE_CHECKING:
    from pnr_ops.config import RemoteConfig

logger = get_logger(__name__)

DEFAULT_SERVER_BINARY = "PNRServerLynux.x86_64"

SessionFactory = Callable[[DeploymentTarget, int], RemoteSession]


def _describe(error: Exception) -> str:
    if isinstance(error, OpsError):
        return error.message
    return str(error)


class RemoteDeployer:
    """
    Pushes the server payload to deployment targets and controls the server.

    Example:
        >>> deployer = RemoteDeployer("dedicated_server", status_callback=print)
        >>> result = await deployer.deploy(target)
        >>> result.success
        True
    """

    def __init__(
        self,
        payload_dir: Path | str,
        port: int = DEFAULT_SSH_PORT,
        server_binary: str = DEFAULT_SERVER_BINARY,
        status_callback: StatusCallback | None = None,
        *,
        stdout_file: str = "pnr.out",
        stderr_file: str = "pnr.err",
        data_file: str = "server_data.db",
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        session_factory: SessionFactory | None = None,
    ) -> None:
        """
        Initialize the deployer.

        Args:
            payload_dir: Local directory mirrored to each target.
            port: SSH port for both channels.
            server_binary: Server executable name inside the payload.
            status_callback: Receiver of human-readable progress lines.
            stdout_file: Remote file receiving the server's stdout.
            stderr_file: Remote file receiving the server's stderr.
            data_file: Server data file name under the user's home.
            connect_timeout: SSH connect timeout.
            poll_interval: Upload completion polling interval.
            session_factory: Creates a RemoteSession for a target and port.
        """
        self.payload_dir = Path(payload_dir)
        self.port = port
        self.server_binary = server_binary
        self.stdout_file = stdout_file
        self.stderr_file = stderr_file
        self.data_file = data_file
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self._session_factory = session_factory or self._default_session
        self._reporter = StatusReporter(status_callback, source="deployer", log=logger)

    @classmethod
    def from_config(
        cls,
        config: RemoteConfig,
        status_callback: StatusCallback | None = None,
    ) -> RemoteDeployer:
        """Build a deployer from the remote deployment configuration."""
        return cls(
            config.payload_dir,
            port=config.port,
            server_binary=config.server_binary,
            status_callback=status_callback,
            stdout_file=config.stdout_file,
            stderr_file=config.stderr_file,
            data_file=config.data_file,
            connect_timeout=config.connect_timeout_seconds,
            poll_interval=config.poll_interval_seconds,
        )

    def _default_session(self, target: DeploymentTarget, port: int) -> RemoteSession:
        return RemoteSession(
            target.domain_name or "",
            port,
            target.username or "",
            target.password or "",
            connect_timeout=self.connect_timeout,
            poll_interval=self.poll_interval,
        )

    # -------------------------------------------------------------------------
    # Remote paths and commands
    # -------------------------------------------------------------------------

    @staticmethod
    def remote_home(target: DeploymentTarget) -> str:
        return f"/home/{target.username}"

    def remote_root(self, target: DeploymentTarget) -> str:
        """Directory the payload is mirrored to."""
        return posixpath.join(self.remote_home(target), target.relative_path)

    def remote_binary(self, target: DeploymentTarget) -> str:
        return posixpath.join(self.remote_root(target), self.server_binary)

    def default_data_path(self, target: DeploymentTarget) -> str:
        """Remote path of the server data file."""
        return posixpath.join(self.remote_home(target), self.data_file)

    def chmod_command(self, target: DeploymentTarget) -> str:
        return f"chmod -R +x {shlex.quote(self.remote_root(target))}"

    def launch_command(self, target: DeploymentTarget) -> str:
        return (
            f"nohup {shlex.quote(self.remote_binary(target))}"
            f" > {shlex.quote(self.stdout_file)}"
            f" 2> {shlex.quote(self.stderr_file)}"
            " < /dev/null &"
        )

    def kill_command(self, target: DeploymentTarget) -> str:
        return f"pkill -f {shlex.quote(self.remote_binary(target))}"

    # -------------------------------------------------------------------------
    # Deploy
    # -------------------------------------------------------------------------

    def _validate(self, target: DeploymentTarget) -> None:
        if not target.is_complete():
            missing = target.missing_fields()
            raise InvalidArgumentError(
                "Deployment target is missing " + ", ".join(missing),
                details={"missing": missing, "location_id": target.id},
            )

    async def deploy(self, target: DeploymentTarget) -> DeploymentResult:
        """
        Mirror the payload to `target` and launch the server.

        Returns:
            A successful result when every directory and file was transferred
            and both remote commands ran; otherwise a failed result carrying
            the first error encountered.
        """
        try:
            return await self._deploy(target)
        except Exception as e:
            logger.exception("Deployment failed", extra={"domain_name": target.domain_name})
            message = f"Deployment to {target.domain_name} failed: {_describe(e)}"
            await self._reporter.error(message)
            return DeploymentResult.failed(message, e, domain_name=target.domain_name)

    async def _deploy(self, target: DeploymentTarget) -> DeploymentResult:
        try:
            self._validate(target)
        except InvalidArgumentError as e:
            await self._reporter.error(e.message)
            return DeploymentResult.failed(e.message, e, domain_name=target.domain_name)

        address = f"{target.domain_name}:{self.port}"
        if not self.payload_dir.is_dir():
            message = f"Payload directory not found: {self.payload_dir}"
            await self._reporter.error(message)
            return DeploymentResult.failed(message, domain_name=target.domain_name)

        await self._reporter.report(f"Deploying server to {address}")
        session = self._session_factory(target, self.port)
        errors: list[Exception] = []

        try:
            async with session.transfer():
                await self._reporter.report(f"Connected to {address}, beginning upload.")
                await self._mirror(session, self.payload_dir, self.remote_root(target), errors)
        except OpsError as e:
            message = f"File transfer to {address} failed: {e.message}"
            await self._reporter.error(message)
            return DeploymentResult.failed(message, e, domain_name=target.domain_name)

        try:
            async with session.shell():
                output = await session.run_command(self.chmod_command(target))
                await self._reporter.report(f"Enable server execution result: {output}")
                output = await session.run_command(self.launch_command(target))
                await self._reporter.report(f"Start server result: {output}")
        except OpsError as e:
            message = f"Could not start server on {address}: {e.message}"
            await self._reporter.error(message)
            return DeploymentResult.failed(message, e, domain_name=target.domain_name)

        if errors:
            message = f"Deployed to {address} with {len(errors)} transfer failure(s)"
            await self._reporter.warning(message)
            return DeploymentResult.failed(message, errors[0], domain_name=target.domain_name)

        message = f"Deployed server to {address}"
        await self._reporter.report(message)
        return DeploymentResult(success=True, message=message, domain_name=target.domain_name)

    async def _mirror(
        self,
        session: RemoteSession,
        local_dir: Path,
        remote_dir: str,
        errors: list[Exception],
    ) -> None:
        """Recursively copy `local_dir` to `remote_dir`, collecting failures."""
        if await session.make_directory(remote_dir):
            await self._reporter.report(f"Created directory {remote_dir}")
        else:
            message = f"Could not create {remote_dir}"
            await self._reporter.warning(message)
            errors.append(OSError(message))

        for entry in sorted(local_dir.iterdir()):
            remote_path = posixpath.join(remote_dir, entry.name)
            if entry.is_dir():
                await self._mirror(session, entry, remote_path, errors)
                continue

            try:
                await session.upload_file(entry, remote_path)
            except OpsError as e:
                await self._reporter.warning(f"Could not upload {remote_path}. {e.message}")
                errors.append(e)
            else:
                await self._reporter.report(f"Uploaded file {remote_path}")

    # -------------------------------------------------------------------------
    # Server control
    # -------------------------------------------------------------------------

    async def _run_single(self, target: DeploymentTarget, command: str, action: str) -> bool:
        try:
            self._validate(target)
        except InvalidArgumentError as e:
            await self._reporter.error(e.message)
            return False

        address = f"{target.domain_name}:{self.port}"
        session = self._session_factory(target, self.port)
        try:
            await session.open_shell()
            await self._reporter.report(f"Connected to {address} to {action} the server.")
            output = await session.run_command(command)
            await self._reporter.report(f"{action.capitalize()} server result: {output}")
            return True
        except OpsError as e:
            await self._reporter.error(f"Failed to {action} the server. {e.message}")
            return False
        finally:
            await session.close_shell()

    async def stop(self, target: DeploymentTarget) -> bool:
        """Kill the server process on `target`."""
        return await self._run_single(target, self.kill_command(target), "stop")

    async def start(self, target: DeploymentTarget) -> bool:
        """Launch the server detached on `target`."""
        return await self._run_single(target, self.launch_command(target), "start")

    async def restart(self, target: DeploymentTarget) -> bool:
        """Stop then start the server; True only if both succeeded."""
        stopped = await self.stop(target)
        started = await self.start(target)
        return stopped and started

    # -------------------------------------------------------------------------
    # Single-file transfer
    # -------------------------------------------------------------------------

    async def download_file(
        self,
        target: DeploymentTarget,
        local_path: Path | str,
        remote_path: str | None = None,
    ) -> bool:
        """
        Copy a remote file (the server data file by default) to `local_path`.

        Returns:
            True on success; failures are reported and return False.
        """
        try:
            self._validate(target)
        except InvalidArgumentError as e:
            await self._reporter.error(e.message)
            return False

        remote_path = remote_path or self.default_data_path(target)
        address = f"{target.domain_name}:{self.port}"
        session = self._session_factory(target, self.port)
        try:
            async with session.transfer():
                await self._reporter.report(f"Connected to {address}, downloading {remote_path}.")
                await session.download_file(remote_path, local_path)
        except OpsError as e:
            await self._reporter.error(f"Failed to download file. {_describe(e)}")
            return False

        await self._reporter.report(f"Downloaded {remote_path} to {local_path}.")
        return True

    async def upload_file(
        self,
        target: DeploymentTarget,
        local_path: Path | str,
        remote_path: str | None = None,
    ) -> bool:
        """
        Copy `local_path` to the remote host (the server data file by default).

        Returns:
            True on success; failures are reported and return False.
        """
        local = Path(local_path)
        if not local.is_file():
            await self._reporter.error(f"Local file not found: {local}")
            return False

        try:
            self._validate(target)
        except InvalidArgumentError as e:
            await self._reporter.error(e.message)
            return False

        remote_path = remote_path or self.default_data_path(target)
        address = f"{target.domain_name}:{self.port}"
        session = self._session_factory(target, self.port)
        try:
            async with session.transfer():
                await self._reporter.report(f"Connected to {address}, uploading {local}.")
                await session.upload_file(local, remote_path)
        except OpsError as e:
            await self._reporter.error(f"Failed to upload file. {_describe(e)}")
            return False

        await self._reporter.report(f"Successfully uploaded {local} to {remote_path}.")
        return True
