"""
Self-update orchestration for a deployed PNR server.

SelfUpdater runs one fail-safe update transaction:

1. Read the installed version (default "0.0.0")
2. Fetch the latest release (feed failures mean "no update")
3. Compare tags by exact string equality
4. Resolve the artifact URL (first asset, else source archive)
5. Download the artifact
6. Snapshot the install directory
7. Stop the running server
8. Extract and copy the update over the install directory
9. Write the new version tag
10. Start the server

Any failure after the snapshot restores it over the install directory, puts
the version marker back to what it was before the attempt, and restarts the
server if this attempt stopped it. check_and_update() always returns a
boolean and never raises.

Progress is tracked through UpdateState so callers can poll the updater while
an update runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from pnr_ops.errors import InvalidArgumentError, OpsError
from pnr_ops.logging import get_logger
from pnr_ops.status import StatusCallback, StatusReporter
from pnr_ops.updates.archive import ArchiveInstaller
from pnr_ops.updates.backup import BackupVault
from pnr_ops.updates.process import (
    DEFAULT_STOP_TIMEOUT,
    ProcessSupervisor,
)
from pnr_ops.updates.release_feed import ReleaseFeedClient
from pnr_ops.updates.version import DEFAULT_VERSION_FILENAME, VersionMarker

if TYPE_CHECKING:
    from pnr_ops.config import UpdatesConfig

logger = get_logger(__name__)


class UpdateState(str, Enum):
    """
    Phases of an update attempt.

    State transitions:
    - idle/succeeded/failed → checking (attempt starts)
    - checking → idle (up to date, feed unavailable, nothing to download)
    - checking → downloading → backing_up → stopping → installing → starting
    - starting → succeeded
    - any active phase → failed
    - failed → restoring → failed (backup put back)
    """

    IDLE = "idle"
    CHECKING = "checking"
    DOWNLOADING = "downloading"
    BACKING_UP = "backing_up"
    STOPPING = "stopping"
    INSTALLING = "installing"
    STARTING = "starting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RESTORING = "restoring"


_VALID_TRANSITIONS: dict[UpdateState, set[UpdateState]] = {
    UpdateState.IDLE: {UpdateState.CHECKING},
    UpdateState.CHECKING: {UpdateState.IDLE, UpdateState.DOWNLOADING, UpdateState.FAILED},
    UpdateState.DOWNLOADING: {UpdateState.BACKING_UP, UpdateState.FAILED},
    UpdateState.BACKING_UP: {UpdateState.STOPPING, UpdateState.FAILED},
    UpdateState.STOPPING: {UpdateState.INSTALLING, UpdateState.FAILED},
    UpdateState.INSTALLING: {UpdateState.STARTING, UpdateState.FAILED},
    UpdateState.STARTING: {UpdateState.SUCCEEDED, UpdateState.FAILED},
    UpdateState.SUCCEEDED: {UpdateState.CHECKING},
    UpdateState.FAILED: {UpdateState.RESTORING, UpdateState.CHECKING},
    UpdateState.RESTORING: {UpdateState.FAILED},
}

_RESTING_STATES = {UpdateState.IDLE, UpdateState.SUCCEEDED, UpdateState.FAILED}


class UpdateStatus(BaseModel):
    """
    Snapshot of the updater's progress.

    Attributes:
        state: Current phase.
        current_version: Installed version when the attempt started.
        target_version: Tag being installed, once known.
        message: Last status line.
        started_at: ISO 8601 timestamp of the attempt start.
        finished_at: ISO 8601 timestamp of the attempt end.
        restored: Whether the backup was put back after a failure.
    """

    state: UpdateState = Field(default=UpdateState.IDLE)
    current_version: str | None = Field(default=None)
    target_version: str | None = Field(default=None)
    message: str | None = Field(default=None)
    started_at: str | None = Field(default=None)
    finished_at: str | None = Field(default=None)
    restored: bool = Field(default=False)


@dataclass
class _Attempt:
    """What one update attempt has changed so far."""

    # None when no version file existed before the attempt
    previous_version: str | None = None
    download_path: Path | None = None
    snapshot_taken: bool = False
    server_stopped: bool = False
    marker_written: bool = False


def _describe(error: Exception) -> str:
    if isinstance(error, OpsError):
        return error.message
    return str(error) or type(error).__name__


class SelfUpdater:
    """
    Keeps an installed server at the latest published release.

    Example:
        >>> updater = SelfUpdater.from_config(config.updates, status_callback=print)
        >>> updated = await updater.check_and_update()
    """

    def __init__(
        self,
        install_dir: Path | str,
        feed: ReleaseFeedClient,
        installer: ArchiveInstaller,
        vault: BackupVault,
        supervisor: ProcessSupervisor,
        *,
        process_name: str = "godot_server",
        executable: str = "godot_server",
        launch_args: list[str] | None = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        version_file: str = DEFAULT_VERSION_FILENAME,
        status_callback: StatusCallback | None = None,
    ) -> None:
        """
        Initialize the updater.

        Args:
            install_dir: Directory holding the running server's files.
            feed: Release feed client.
            installer: Artifact downloader and installer.
            vault: Backup snapshot store.
            supervisor: Local process control.
            process_name: Name of the running server process.
            executable: Server executable relative to install_dir.
            launch_args: Fixed launch arguments.
            stop_timeout: Bounded wait for the server to exit.
            version_file: Version marker file name inside install_dir.
            status_callback: Receiver of human-readable progress lines.
        """
        self.install_dir = Path(install_dir)
        self.feed = feed
        self.installer = installer
        self.vault = vault
        self.supervisor = supervisor
        self.process_name = process_name
        self.executable = executable
        self.launch_args = list(launch_args) if launch_args is not None else ["--headless"]
        self.stop_timeout = stop_timeout
        self.marker = VersionMarker.for_install_dir(self.install_dir, version_file)
        self._reporter = StatusReporter(status_callback, source="updater", log=logger)
        self._status = UpdateStatus()

    @classmethod
    def from_config(
        cls,
        config: UpdatesConfig,
        status_callback: StatusCallback | None = None,
    ) -> SelfUpdater:
        """Build an updater and its collaborators from configuration."""
        feed = ReleaseFeedClient.from_config(config)
        return cls(
            install_dir=config.install_dir,
            feed=feed,
            installer=ArchiveInstaller(client_factory=feed.create_http_client),
            vault=BackupVault(config.backup_dir),
            supervisor=ProcessSupervisor(settle_seconds=config.settle_seconds),
            process_name=config.process_name,
            executable=config.executable,
            launch_args=config.launch_args,
            stop_timeout=config.stop_timeout_seconds,
            version_file=config.version_file,
            status_callback=status_callback,
        )

    @property
    def state(self) -> UpdateState:
        """Get the current phase."""
        return self._status.state

    @property
    def is_running(self) -> bool:
        """True while an attempt is in progress."""
        return self._status.state not in _RESTING_STATES

    def get_status(self) -> UpdateStatus:
        """Return a copy of the current status."""
        return self._status.model_copy()

    async def _report(self, message: str) -> None:
        self._status.message = message
        await self._reporter.report(message)

    def _transition_to(self, new_state: UpdateState) -> None:
        """
        Move to a new phase.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self._status.state
        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidArgumentError(
                f"Invalid update transition from {current.value} to {new_state.value}",
                details={"current_state": current.value, "target_state": new_state.value},
            )

        logger.debug(
            f"Update state: {current.value} -> {new_state.value}",
            extra={"target_version": self._status.target_version},
        )
        self._status.state = new_state
        if new_state in _RESTING_STATES:
            self._status.finished_at = datetime.now(UTC).isoformat()

    def _start_server(self) -> int:
        return self.supervisor.start(
            self.install_dir / self.executable,
            self.install_dir,
            self.launch_args,
        )

    async def check_and_update(self) -> bool:
        """
        Install the latest release if it differs from the installed version.

        Returns:
            True if an update was installed, False otherwise (up to date,
            feed unavailable, nothing to download, or the attempt failed).
        """
        if self.is_running:
            await self._report("An update is already in progress.")
            return False

        self._status = UpdateStatus(
            state=self._status.state,
            started_at=datetime.now(UTC).isoformat(),
        )
        attempt = _Attempt()

        try:
            self._transition_to(UpdateState.CHECKING)
            await self._report("Checking for updates...")

            current_version = self.marker.read()
            attempt.previous_version = current_version if self.marker.exists() else None
            self._status.current_version = current_version
            await self._report(f"Current version: {current_version}")

            release = await self.feed.get_latest_release()
            if release is None:
                await self._report("Could not retrieve latest release information.")
                self._transition_to(UpdateState.IDLE)
                return False

            latest_version = release.tag_name or ""
            self._status.target_version = latest_version
            await self._report(f"Latest version: {latest_version}")

            if self.marker.matches(latest_version):
                await self._report("Server is up to date.")
                self._transition_to(UpdateState.IDLE)
                return False

            await self._report("Update available! Starting update process...")

            asset_url = release.artifact_url()
            if not asset_url:
                await self._report("No downloadable asset found for the latest release.")
                self._transition_to(UpdateState.IDLE)
                return False

            self._transition_to(UpdateState.DOWNLOADING)
            attempt.download_path = await self.installer.download(asset_url)
            await self._report("Update downloaded.")

            self._transition_to(UpdateState.BACKING_UP)
            await self.vault.snapshot(self.install_dir)
            attempt.snapshot_taken = True
            await self._report("Backup created successfully.")

            self._transition_to(UpdateState.STOPPING)
            attempt.server_stopped = True
            await self.supervisor.stop(self.process_name, self.stop_timeout)
            await self._report("Server stopped.")

            self._transition_to(UpdateState.INSTALLING)
            archive_path, attempt.download_path = attempt.download_path, None
            await self.installer.install_overwriting(archive_path, self.install_dir)
            await self._report("Update installed.")
            attempt.marker_written = True
            self.marker.write(latest_version)

            self._transition_to(UpdateState.STARTING)
            self._start_server()
            await self._report("Server started.")

            self._transition_to(UpdateState.SUCCEEDED)
            await self._report(f"Successfully updated to version {latest_version}")
            return True

        except Exception as e:
            logger.exception("Update attempt failed")
            if attempt.download_path is not None:
                attempt.download_path.unlink(missing_ok=True)
            await self._recover(e, attempt)
            return False

    async def _recover(self, error: Exception, attempt: _Attempt) -> None:
        """Undo a failed attempt: restore the snapshot, reset the marker, restart."""
        self._status.state = UpdateState.FAILED
        self._status.finished_at = datetime.now(UTC).isoformat()
        await self._report(f"Error during update: {_describe(error)}")

        if not attempt.snapshot_taken:
            return

        self._transition_to(UpdateState.RESTORING)
        await self._report("Attempting to restore from backup...")
        try:
            await self.vault.restore(self.install_dir)
            self._status.restored = True
            await self._report("Restored from backup.")
        except Exception as restore_error:
            logger.exception("Restore from backup failed")
            await self._report(
                f"Failed to restore from backup: {_describe(restore_error)}"
            )

        # The snapshot only adds files back, so the marker is reset explicitly.
        if attempt.marker_written:
            try:
                self.marker.reset(attempt.previous_version)
            except OpsError as marker_error:
                logger.exception("Version marker reset failed")
                await self._report(
                    f"Failed to reset version marker: {marker_error.message}"
                )

        if self._status.restored and attempt.server_stopped:
            try:
                self._start_server()
                await self._report("Server restarted.")
            except Exception as start_error:
                logger.exception("Server restart after restore failed")
                await self._report(
                    f"Failed to restart server after restore: {_describe(start_error)}"
                )

        self._transition_to(UpdateState.FAILED)
