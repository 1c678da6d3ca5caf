"""
Backup snapshots of a server install directory.

A single snapshot lives at a fixed path. Taking a new snapshot deletes the
previous one first. Restoring copies every backed-up file over the install
directory; files that exist only in the install directory are left alone.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from pnr_ops.errors import FailedPreconditionError, InternalError
from pnr_ops.logging import get_logger

logger = get_logger(__name__)


def copy_tree_overwriting(source: Path, destination: Path) -> int:
    """
    Copy every file under `source` to the same relative path under `destination`.

    Intermediate directories are created as needed and existing files are
    overwritten. Nothing is removed from `destination`.

    Args:
        source: Directory to copy from.
        destination: Directory to copy onto.

    Returns:
        Number of files copied.
    """
    copied = 0
    for file_path in sorted(source.rglob("*")):
        if not file_path.is_file():
            continue
        target = destination / file_path.relative_to(source)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(file_path, target)
        copied += 1
    return copied


class BackupVault:
    """
    Keeps one snapshot of an install directory at a fixed location.

    Attributes:
        backup_dir: Where the snapshot is stored.
    """

    def __init__(self, backup_dir: Path | str) -> None:
        self.backup_dir = Path(backup_dir)

    def exists(self) -> bool:
        """Return True if a snapshot is present."""
        return self.backup_dir.is_dir()

    async def snapshot(self, source_dir: Path | str) -> int:
        """
        Replace the snapshot with a full copy of `source_dir`.

        Args:
            source_dir: Install directory to back up.

        Returns:
            Number of files in the new snapshot.

        Raises:
            FailedPreconditionError: If the source directory does not exist.
            InternalError: If the copy fails.
        """
        source = Path(source_dir)
        if not source.is_dir():
            raise FailedPreconditionError(
                f"Install directory does not exist: {source}",
                details={"source_dir": str(source)},
            )

        try:
            count = await asyncio.to_thread(self._snapshot_sync, source)
        except OSError as e:
            raise InternalError(
                f"Failed to create backup: {e}",
                details={"source_dir": str(source), "backup_dir": str(self.backup_dir)},
            ) from e

        logger.info(
            "Backup snapshot created",
            extra={"backup_dir": str(self.backup_dir), "files": count},
        )
        return count

    def _snapshot_sync(self, source: Path) -> int:
        if self.backup_dir.exists():
            shutil.rmtree(self.backup_dir)
        self.backup_dir.mkdir(parents=True)
        return copy_tree_overwriting(source, self.backup_dir)

    async def restore(self, dest_dir: Path | str) -> int:
        """
        Copy every file of the snapshot onto `dest_dir`.

        Args:
            dest_dir: Install directory to restore into.

        Returns:
            Number of files restored.

        Raises:
            FailedPreconditionError: If no snapshot exists.
            InternalError: If the copy fails.
        """
        destination = Path(dest_dir)
        if not self.exists():
            raise FailedPreconditionError(
                "No backup snapshot to restore",
                details={"backup_dir": str(self.backup_dir)},
            )

        try:
            count = await asyncio.to_thread(
                copy_tree_overwriting, self.backup_dir, destination
            )
        except OSError as e:
            raise InternalError(
                f"Failed to restore backup: {e}",
                details={"backup_dir": str(self.backup_dir), "dest_dir": str(destination)},
            ) from e

        logger.info(
            "Backup snapshot restored",
            extra={"dest_dir": str(destination), "files": count},
        )
        return count
