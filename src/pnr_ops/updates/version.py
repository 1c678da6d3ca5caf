"""
Version marker for an installed server.

The installed version is a single tag stored in a plain-text file inside the
install directory. Tags are compared by exact string equality; no semantic
version ordering is applied, so any difference from the latest published tag
(including a "lower" one) triggers an install.
"""

from __future__ import annotations

import os
from pathlib import Path

from pnr_ops.errors import InternalError
from pnr_ops.logging import get_logger

logger = get_logger(__name__)

DEFAULT_VERSION = "0.0.0"
DEFAULT_VERSION_FILENAME = "version.txt"


class VersionMarker:
    """
    Reads and writes the version tag kept alongside an install directory.

    Attributes:
        path: Location of the version file.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    @classmethod
    def for_install_dir(
        cls,
        install_dir: Path | str,
        filename: str = DEFAULT_VERSION_FILENAME,
    ) -> VersionMarker:
        """Create a marker for the version file inside an install directory."""
        return cls(Path(install_dir) / filename)

    def exists(self) -> bool:
        """Return True if the version file is present."""
        return self.path.is_file()

    def read(self) -> str:
        """
        Read the installed version tag.

        Returns:
            The trimmed tag, or "0.0.0" when the file is missing or empty.
        """
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return DEFAULT_VERSION
        except OSError as e:
            logger.warning(
                f"Could not read version file, assuming {DEFAULT_VERSION}: {e}",
                extra={"path": str(self.path)},
            )
            return DEFAULT_VERSION

        return text or DEFAULT_VERSION

    def write(self, version: str) -> None:
        """
        Persist a version tag.

        The tag is written to a temporary sibling and renamed into place.

        Raises:
            InternalError: If the file cannot be written.
        """
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(version, encoding="utf-8")
            os.replace(temp_path, self.path)
        except OSError as e:
            raise InternalError(
                f"Failed to write version file: {e}",
                details={"path": str(self.path), "version": version},
            ) from e

        logger.info(
            f"Version marker set to {version}",
            extra={"path": str(self.path)},
        )

    def reset(self, previous: str | None) -> None:
        """
        Put back a tag read earlier, or remove the file if there was none.

        Raises:
            InternalError: If the file cannot be written or removed.
        """
        if previous is not None:
            self.write(previous)
            return

        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise InternalError(
                f"Failed to remove version file: {e}",
                details={"path": str(self.path)},
            ) from e
        logger.info("Version marker removed", extra={"path": str(self.path)})

    def matches(self, tag: str | None) -> bool:
        """Return True if `tag` equals the installed version exactly."""
        return tag == self.read()
