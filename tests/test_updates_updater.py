"""
Tests for the self-updater.

Tests cover:
- UpdateState enum and transitions
- Up-to-date, unavailable feed and no-artifact outcomes
- Successful update (download, backup, stop, install, version, start)
- Failure after backup restores the snapshot and restarts the server
- Status callback messages
"""

from __future__ import annotations

import zipfile
from pathlib import Path
from unittest import mock

import pytest

from pnr_ops.config import UpdatesConfig
from pnr_ops.errors import InternalError, UnavailableError
from pnr_ops.updates.archive import ArchiveInstaller
from pnr_ops.updates.backup import BackupVault
from pnr_ops.updates.process import ProcessSupervisor
from pnr_ops.updates.release_feed import Asset, Release, ReleaseFeedClient
from pnr_ops.updates.updater import (
    _VALID_TRANSITIONS,
    SelfUpdater,
    UpdateState,
)

ASSET_URL = "https://github.com/o/r/releases/download/v2.0.0/server.zip"

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    """Install directory holding version 1.0.0."""
    path = tmp_path / "install"
    path.mkdir()
    (path / "godot_server").write_text("server v1")
    (path / "server_data.db").write_text("players")
    (path / "version.txt").write_text("v1.0.0")
    return path


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def feed() -> mock.MagicMock:
    """Release feed returning v2.0.0 with one asset."""
    client = mock.MagicMock(spec=ReleaseFeedClient)
    client.get_latest_release = mock.AsyncMock(
        return_value=Release(
            tag_name="v2.0.0",
            assets=[Asset(name="server.zip", browser_download_url=ASSET_URL)],
        )
    )
    return client


@pytest.fixture
def installer(work_dir: Path) -> ArchiveInstaller:
    """Installer whose download produces a wrapped zip of version 2.0.0."""
    installer = ArchiveInstaller(work_dir)

    async def download(url: str) -> Path:
        path = installer.new_download_path()
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr("pnr-server-v2/godot_server", "server v2")
            archive.writestr("pnr-server-v2/assets/map.pck", "map")
        return path

    installer.download = mock.AsyncMock(side_effect=download)  # type: ignore[method-assign]
    return installer


@pytest.fixture
def supervisor() -> mock.MagicMock:
    supervisor = mock.MagicMock(spec=ProcessSupervisor)
    supervisor.stop = mock.AsyncMock(return_value=1)
    supervisor.start = mock.MagicMock(return_value=1234)
    return supervisor


@pytest.fixture
def updater(
    install_dir: Path,
    tmp_path: Path,
    feed: mock.MagicMock,
    installer: ArchiveInstaller,
    supervisor: mock.MagicMock,
    status_lines: list[str],
) -> SelfUpdater:
    return SelfUpdater(
        install_dir,
        feed,
        installer,
        BackupVault(tmp_path / "backup"),
        supervisor,
        status_callback=status_lines.append,
    )


# =============================================================================
# State Tests
# =============================================================================


class TestUpdateState:
    """Tests for UpdateState and its transitions."""

    def test_state_values(self) -> None:
        """Test states have string values."""
        assert UpdateState.IDLE.value == "idle"
        assert UpdateState.BACKING_UP.value == "backing_up"
        assert UpdateState("restoring") == UpdateState.RESTORING

    def test_every_state_has_transitions(self) -> None:
        """Test every state appears in the transition table."""
        assert set(_VALID_TRANSITIONS) == set(UpdateState)

    def test_active_states_can_fail(self) -> None:
        """Test every active phase may fail."""
        for state in (
            UpdateState.CHECKING,
            UpdateState.DOWNLOADING,
            UpdateState.BACKING_UP,
            UpdateState.STOPPING,
            UpdateState.INSTALLING,
            UpdateState.STARTING,
        ):
            assert UpdateState.FAILED in _VALID_TRANSITIONS[state]

    def test_initial_status(self, updater: SelfUpdater) -> None:
        """Test a new updater is idle."""
        status = updater.get_status()
        assert status.state == UpdateState.IDLE
        assert updater.is_running is False


# =============================================================================
# No-op Outcomes
# =============================================================================


class TestNoUpdate:
    """Tests for attempts that install nothing."""

    @pytest.mark.asyncio
    async def test_up_to_date(
        self,
        updater: SelfUpdater,
        feed: mock.MagicMock,
        installer: ArchiveInstaller,
        supervisor: mock.MagicMock,
        install_dir: Path,
        status_lines: list[str],
    ) -> None:
        """Test matching tags download and stop nothing."""
        feed.get_latest_release.return_value = Release(tag_name="v1.0.0")

        assert await updater.check_and_update() is False

        installer.download.assert_not_called()
        supervisor.stop.assert_not_called()
        supervisor.start.assert_not_called()
        assert (install_dir / "godot_server").read_text() == "server v1"
        assert "Server is up to date." in status_lines
        assert updater.state == UpdateState.IDLE

    @pytest.mark.asyncio
    async def test_missing_version_file_defaults(
        self,
        updater: SelfUpdater,
        feed: mock.MagicMock,
        install_dir: Path,
        status_lines: list[str],
    ) -> None:
        """Test a missing version file reads as 0.0.0."""
        (install_dir / "version.txt").unlink()
        feed.get_latest_release.return_value = Release(tag_name="0.0.0")

        assert await updater.check_and_update() is False
        assert "Current version: 0.0.0" in status_lines

    @pytest.mark.asyncio
    async def test_feed_unavailable(
        self,
        updater: SelfUpdater,
        feed: mock.MagicMock,
        supervisor: mock.MagicMock,
        status_lines: list[str],
    ) -> None:
        """Test a failed lookup means no update."""
        feed.get_latest_release.return_value = None

        assert await updater.check_and_update() is False

        supervisor.stop.assert_not_called()
        assert "Could not retrieve latest release information." in status_lines
        assert updater.state == UpdateState.IDLE

    @pytest.mark.asyncio
    async def test_no_downloadable_asset(
        self,
        updater: SelfUpdater,
        feed: mock.MagicMock,
        installer: ArchiveInstaller,
        status_lines: list[str],
    ) -> None:
        """Test a release without assets or source archive is skipped."""
        feed.get_latest_release.return_value = Release(tag_name="v2.0.0")

        assert await updater.check_and_update() is False

        installer.download.assert_not_called()
        assert "No downloadable asset found for the latest release." in status_lines


# =============================================================================
# Successful Update
# =============================================================================


class TestSuccessfulUpdate:
    """Tests for a complete update."""

    @pytest.mark.asyncio
    async def test_update_installs_new_version(
        self,
        updater: SelfUpdater,
        installer: ArchiveInstaller,
        supervisor: mock.MagicMock,
        install_dir: Path,
        tmp_path: Path,
        status_lines: list[str],
    ) -> None:
        """Test the full happy path."""
        assert await updater.check_and_update() is True

        installer.download.assert_awaited_once_with(ASSET_URL)
        supervisor.stop.assert_awaited_once_with("godot_server", 30.0)
        supervisor.start.assert_called_once_with(
            install_dir / "godot_server", install_dir, ["--headless"]
        )

        assert (install_dir / "godot_server").read_text() == "server v2"
        assert (install_dir / "assets" / "map.pck").read_text() == "map"
        assert (install_dir / "server_data.db").read_text() == "players"
        assert (install_dir / "version.txt").read_text() == "v2.0.0"

        # Backup holds the pre-update state
        assert (tmp_path / "backup" / "godot_server").read_text() == "server v1"

        assert status_lines[0] == "Checking for updates..."
        assert "Current version: v1.0.0" in status_lines
        assert "Latest version: v2.0.0" in status_lines
        assert status_lines[-1] == "Successfully updated to version v2.0.0"

        status = updater.get_status()
        assert status.state == UpdateState.SUCCEEDED
        assert status.current_version == "v1.0.0"
        assert status.target_version == "v2.0.0"
        assert status.finished_at is not None

    @pytest.mark.asyncio
    async def test_second_run_is_up_to_date(
        self,
        updater: SelfUpdater,
        installer: ArchiveInstaller,
    ) -> None:
        """Test the written tag makes the next check a no-op."""
        assert await updater.check_and_update() is True
        assert await updater.check_and_update() is False
        assert installer.download.await_count == 1

    @pytest.mark.asyncio
    async def test_lower_tag_still_installs(
        self,
        updater: SelfUpdater,
        feed: mock.MagicMock,
        install_dir: Path,
    ) -> None:
        """Test any differing tag is installed, even an older one."""
        feed.get_latest_release.return_value = Release(
            tag_name="v0.9.0",
            assets=[Asset(browser_download_url=ASSET_URL)],
        )

        assert await updater.check_and_update() is True
        assert (install_dir / "version.txt").read_text() == "v0.9.0"

    @pytest.mark.asyncio
    async def test_zipball_fallback(
        self,
        updater: SelfUpdater,
        feed: mock.MagicMock,
        installer: ArchiveInstaller,
    ) -> None:
        """Test the source archive is used without assets."""
        feed.get_latest_release.return_value = Release(
            tag_name="v2.0.0",
            zipball_url="https://api.github.com/repos/o/r/zipball/v2.0.0",
        )

        assert await updater.check_and_update() is True
        installer.download.assert_awaited_once_with(
            "https://api.github.com/repos/o/r/zipball/v2.0.0"
        )

    @pytest.mark.asyncio
    async def test_async_status_callback(
        self,
        install_dir: Path,
        tmp_path: Path,
        feed: mock.MagicMock,
        installer: ArchiveInstaller,
        supervisor: mock.MagicMock,
    ) -> None:
        """Test coroutine callbacks receive every line."""
        received: list[str] = []

        async def callback(message: str) -> None:
            received.append(message)

        updater = SelfUpdater(
            install_dir,
            feed,
            installer,
            BackupVault(tmp_path / "backup"),
            supervisor,
            status_callback=callback,
        )
        assert await updater.check_and_update() is True
        assert received[-1] == "Successfully updated to version v2.0.0"


# =============================================================================
# Failure and Restore
# =============================================================================


class TestFailure:
    """Tests for failed attempts."""

    @pytest.mark.asyncio
    async def test_install_failure_restores_backup(
        self,
        updater: SelfUpdater,
        installer: ArchiveInstaller,
        supervisor: mock.MagicMock,
        install_dir: Path,
        status_lines: list[str],
    ) -> None:
        """Test a failed install puts the old files back and restarts."""

        async def broken_install(archive_path: Path, target: Path) -> int:
            (target / "godot_server").write_text("half written")
            raise InternalError("disk full")

        installer.install_overwriting = mock.AsyncMock(side_effect=broken_install)  # type: ignore[method-assign]

        assert await updater.check_and_update() is False

        assert (install_dir / "godot_server").read_text() == "server v1"
        assert (install_dir / "version.txt").read_text() == "v1.0.0"
        supervisor.start.assert_called_once()
        assert "Error during update: disk full" in status_lines
        assert "Restored from backup." in status_lines

        status = updater.get_status()
        assert status.state == UpdateState.FAILED
        assert status.restored is True

    @pytest.mark.asyncio
    async def test_start_failure_restores_and_retries_start(
        self,
        updater: SelfUpdater,
        supervisor: mock.MagicMock,
        install_dir: Path,
    ) -> None:
        """Test a failed start after install restores the backup."""
        supervisor.start.side_effect = [UnavailableError("exec failed"), 99]

        assert await updater.check_and_update() is False

        assert (install_dir / "godot_server").read_text() == "server v1"
        assert supervisor.start.call_count == 2

    @pytest.mark.asyncio
    async def test_download_failure_does_not_restore(
        self,
        updater: SelfUpdater,
        installer: ArchiveInstaller,
        supervisor: mock.MagicMock,
        tmp_path: Path,
        status_lines: list[str],
    ) -> None:
        """Test a failure before the backup touches nothing."""
        # A stale snapshot from an earlier run must not be restored
        stale = tmp_path / "backup"
        stale.mkdir()
        (stale / "godot_server").write_text("ancient")
        installer.download = mock.AsyncMock(side_effect=UnavailableError("timeout"))  # type: ignore[method-assign]

        assert await updater.check_and_update() is False

        supervisor.stop.assert_not_called()
        supervisor.start.assert_not_called()
        assert not any("restore" in line.lower() for line in status_lines)
        assert updater.state == UpdateState.FAILED

    @pytest.mark.asyncio
    async def test_backup_failure_keeps_server_running(
        self,
        updater: SelfUpdater,
        supervisor: mock.MagicMock,
        installer: ArchiveInstaller,
        work_dir: Path,
    ) -> None:
        """Test a failed snapshot aborts before stopping the server."""
        updater.vault.snapshot = mock.AsyncMock(side_effect=InternalError("no space"))  # type: ignore[method-assign]

        assert await updater.check_and_update() is False

        supervisor.stop.assert_not_called()
        # The downloaded artifact is discarded
        assert not list(work_dir.iterdir())

    @pytest.mark.asyncio
    async def test_restore_failure_is_reported(
        self,
        updater: SelfUpdater,
        installer: ArchiveInstaller,
        status_lines: list[str],
    ) -> None:
        """Test a failing restore still returns False."""
        installer.install_overwriting = mock.AsyncMock(side_effect=InternalError("disk full"))  # type: ignore[method-assign]
        updater.vault.restore = mock.AsyncMock(side_effect=InternalError("backup gone"))  # type: ignore[method-assign]

        assert await updater.check_and_update() is False

        assert "Failed to restore from backup: backup gone" in status_lines
        assert updater.get_status().restored is False
        assert updater.state == UpdateState.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_exception_never_escapes(
        self,
        updater: SelfUpdater,
        feed: mock.MagicMock,
    ) -> None:
        """Test arbitrary errors become a False result."""
        feed.get_latest_release.side_effect = RuntimeError("boom")

        assert await updater.check_and_update() is False
        assert updater.state == UpdateState.FAILED

    @pytest.mark.asyncio
    async def test_retry_after_failure(
        self,
        updater: SelfUpdater,
        feed: mock.MagicMock,
    ) -> None:
        """Test a new attempt can start after a failure."""
        feed.get_latest_release.side_effect = [RuntimeError("boom"), feed.get_latest_release.return_value]

        assert await updater.check_and_update() is False
        assert await updater.check_and_update() is True

    @pytest.mark.asyncio
    async def test_failed_first_install_leaves_no_version_file(
        self,
        updater: SelfUpdater,
        installer: ArchiveInstaller,
        supervisor: mock.MagicMock,
        install_dir: Path,
    ) -> None:
        """Test a failed start on a host without a version file keeps 0.0.0."""
        (install_dir / "version.txt").unlink()
        supervisor.start.side_effect = [OSError("exec format error"), 99]

        assert await updater.check_and_update() is False

        assert not (install_dir / "version.txt").exists()
        assert updater.marker.read() == "0.0.0"

        # The next check retries instead of reporting up to date
        supervisor.start.side_effect = None
        assert await updater.check_and_update() is True
        assert installer.download.await_count == 2
        assert (install_dir / "version.txt").read_text() == "v2.0.0"

    @pytest.mark.asyncio
    async def test_version_reset_even_when_restore_fails(
        self,
        updater: SelfUpdater,
        supervisor: mock.MagicMock,
        install_dir: Path,
    ) -> None:
        """Test the previous tag is written back without a usable snapshot."""
        supervisor.start.side_effect = UnavailableError("exec failed")
        updater.vault.restore = mock.AsyncMock(side_effect=InternalError("backup gone"))  # type: ignore[method-assign]

        assert await updater.check_and_update() is False

        assert (install_dir / "version.txt").read_text() == "v1.0.0"

    @pytest.mark.asyncio
    async def test_restart_failure_reported_separately(
        self,
        updater: SelfUpdater,
        supervisor: mock.MagicMock,
        status_lines: list[str],
    ) -> None:
        """Test a failed restart after a good restore is not called a restore failure."""
        supervisor.start.side_effect = [
            UnavailableError("exec failed"),
            UnavailableError("executable missing"),
        ]

        assert await updater.check_and_update() is False

        assert "Restored from backup." in status_lines
        assert "Failed to restart server after restore: executable missing" in status_lines
        assert not any(line.startswith("Failed to restore") for line in status_lines)
        status = updater.get_status()
        assert status.restored is True
        assert status.state == UpdateState.FAILED

    @pytest.mark.asyncio
    async def test_restart_after_restore_reported(
        self,
        updater: SelfUpdater,
        installer: ArchiveInstaller,
        status_lines: list[str],
    ) -> None:
        """Test a successful restart after restore is reported."""
        installer.install_overwriting = mock.AsyncMock(side_effect=InternalError("disk full"))  # type: ignore[method-assign]

        assert await updater.check_and_update() is False
        assert status_lines[-1] == "Server restarted."


# =============================================================================
# Construction
# =============================================================================


class TestFromConfig:
    """Tests for SelfUpdater.from_config."""

    def test_from_config(self, tmp_path: Path) -> None:
        """Test collaborators are built from configuration."""
        config = UpdatesConfig(
            install_dir=str(tmp_path / "srv"),
            backup_dir=str(tmp_path / "bak"),
            process_name="pnr",
            executable="bin/pnr",
            launch_args=["--headless", "--port", "7777"],
            stop_timeout_seconds=10,
            settle_seconds=0.5,
            token="secret",
        )

        updater = SelfUpdater.from_config(config)

        assert updater.install_dir == tmp_path / "srv"
        assert updater.vault.backup_dir == tmp_path / "bak"
        assert updater.process_name == "pnr"
        assert updater.executable == "bin/pnr"
        assert updater.launch_args == ["--headless", "--port", "7777"]
        assert updater.stop_timeout == 10
        assert updater.supervisor.settle_seconds == 0.5
        assert updater.feed.headers["Authorization"] == "token secret"
        assert updater.marker.path == tmp_path / "srv" / "version.txt"
