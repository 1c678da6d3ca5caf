"""
Release artifact download and installation.

Artifacts are streamed to a uniquely named temporary file, extracted into a
fresh temporary directory, and copied over the install directory. Release
archives produced by the hosting service usually wrap their contents in one
top-level directory; when the extraction root holds exactly one entry and it
is a directory, that directory is treated as the payload root.
"""

from __future__ import annotations

import asyncio
import shutil
import tarfile
import tempfile
import uuid
import zipfile
from collections.abc import Callable
from pathlib import Path

import httpx

from pnr_ops.errors import FailedPreconditionError, InternalError, UnavailableError
from pnr_ops.logging import get_logger
from pnr_ops.updates.backup import copy_tree_overwriting

logger = get_logger(__name__)

DOWNLOAD_PREFIX = "pnr_server_update_"
EXTRACT_PREFIX = "pnr_server_extract_"
DOWNLOAD_CHUNK_SIZE = 65536  # 64KB chunks


def _default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(follow_redirects=True, timeout=60.0)


def resolve_payload_root(extract_dir: Path) -> Path:
    """
    Pick the directory whose contents form the payload.

    Args:
        extract_dir: Directory an archive was extracted into.

    Returns:
        The single top-level directory when it is the only entry, otherwise
        `extract_dir` itself.
    """
    entries = list(extract_dir.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return extract_dir


def extract_archive(archive_path: Path, destination: Path) -> None:
    """
    Extract a zip or tar archive into `destination`.

    Raises:
        FailedPreconditionError: If the file is not a supported archive.
    """
    if zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path) as archive:
            archive.extractall(destination)
        return

    if tarfile.is_tarfile(archive_path):
        with tarfile.open(archive_path) as archive:
            archive.extractall(destination, filter="data")
        return

    raise FailedPreconditionError(
        f"Unsupported archive format: {archive_path.name}",
        details={"path": str(archive_path)},
    )


class ArchiveInstaller:
    """
    Downloads release artifacts and installs them over a directory.

    Attributes:
        temp_dir: Parent directory for downloads and extraction.
    """

    def __init__(
        self,
        temp_dir: Path | str | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        """
        Initialize the installer.

        Args:
            temp_dir: Parent for temporary files (defaults to the system temp dir).
            client_factory: Creates the HTTP client used for downloads, so the
                release feed's authorization headers can be reused.
        """
        self.temp_dir = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())
        self._client_factory = client_factory or _default_client_factory

    def new_download_path(self) -> Path:
        """Return a collision-free path for a new download."""
        return self.temp_dir / f"{DOWNLOAD_PREFIX}{uuid.uuid4().hex}"

    async def download(self, url: str) -> Path:
        """
        Stream an artifact to a new temporary file.

        Args:
            url: Artifact URL.

        Returns:
            Path of the downloaded file.

        Raises:
            UnavailableError: If the download fails. The partial file is removed.
        """
        download_path = self.new_download_path()
        self.temp_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Downloading release artifact", extra={"url": url})

        try:
            async with self._client_factory() as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(download_path, "wb") as f:
                        async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                            f.write(chunk)
        except (httpx.HTTPError, OSError) as e:
            download_path.unlink(missing_ok=True)
            raise UnavailableError(
                f"Failed to download release artifact: {e}",
                details={"url": url},
            ) from e

        logger.info(
            "Release artifact downloaded",
            extra={"path": str(download_path), "bytes": download_path.stat().st_size},
        )
        return download_path

    async def install_overwriting(
        self,
        archive_path: Path | str,
        install_dir: Path | str,
    ) -> int:
        """
        Extract an archive and copy its payload over `install_dir`.

        The archive and the extraction directory are removed afterwards,
        whether or not the copy succeeded; cleanup failures are only logged.

        Args:
            archive_path: Downloaded artifact.
            install_dir: Directory to overwrite.

        Returns:
            Number of files installed.

        Raises:
            FailedPreconditionError: If the archive format is unsupported.
            InternalError: If extraction or copying fails.
        """
        return await asyncio.to_thread(
            self._install_sync, Path(archive_path), Path(install_dir)
        )

    def _install_sync(self, archive_path: Path, install_dir: Path) -> int:
        extract_dir = self.temp_dir / f"{EXTRACT_PREFIX}{uuid.uuid4().hex}"
        try:
            extract_dir.mkdir(parents=True)
            try:
                extract_archive(archive_path, extract_dir)
            except (zipfile.BadZipFile, tarfile.TarError, OSError) as e:
                raise InternalError(
                    f"Failed to extract archive: {e}",
                    details={"archive": str(archive_path)},
                ) from e

            payload_root = resolve_payload_root(extract_dir)
            try:
                count = copy_tree_overwriting(payload_root, install_dir)
            except OSError as e:
                raise InternalError(
                    f"Failed to copy update into install directory: {e}",
                    details={"install_dir": str(install_dir)},
                ) from e
        finally:
            self._cleanup(archive_path, extract_dir)

        logger.info(
            "Update installed",
            extra={
                "install_dir": str(install_dir),
                "files": count,
                "unwrapped": payload_root != extract_dir,
            },
        )
        return count

    def _cleanup(self, archive_path: Path, extract_dir: Path) -> None:
        try:
            archive_path.unlink(missing_ok=True)
            if extract_dir.exists():
                shutil.rmtree(extract_dir)
        except OSError as e:
            logger.warning(
                f"Could not clean up temporary files: {e}",
                extra={"archive": str(archive_path), "extract_dir": str(extract_dir)},
            )
