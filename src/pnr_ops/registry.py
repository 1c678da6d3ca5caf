"""
Registry of deployed server locations.

A location is a DeploymentTarget: the public host of a provisioned VM plus the
credentials used to deploy to it. LocationRegistry defines asynchronous CRUD
keyed by an opaque id; YamlLocationRegistry stores the records in a YAML file
that is rewritten atomically on every change.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from pnr_ops.errors import FailedPreconditionError, InternalError
from pnr_ops.logging import get_logger

logger = get_logger(__name__)


class DeploymentTarget(BaseModel):
    """
    Where and how to deploy a server.

    Attributes:
        id: Opaque identifier assigned by the registry.
        name: Display name of the location.
        domain_name: Public host name.
        username: SSH user.
        password: SSH password.
        relative_path: Deployment directory under the user's home.
    """

    id: str | None = Field(default=None, description="Registry-assigned identifier")
    name: str | None = Field(default=None, description="Display name")
    domain_name: str | None = Field(default=None, description="Public host name")
    username: str | None = Field(default=None, description="SSH user")
    password: str | None = Field(default=None, repr=False, description="SSH password")
    relative_path: str = Field(
        default="dedicated_server",
        description="Deployment directory under /home/{username}",
    )

    def is_complete(self) -> bool:
        """Return True if host, username and password are all set."""
        return bool(self.domain_name and self.username and self.password)

    def missing_fields(self) -> list[str]:
        """Names of required connection fields that are unset."""
        return [
            field_name
            for field_name in ("domain_name", "username", "password")
            if not getattr(self, field_name)
        ]


class LocationRegistry(ABC):
    """
    Abstract store of deployment targets.

    Implementations must be safe to call from a single event loop with
    overlapping coroutines.
    """

    @abstractmethod
    async def get_all(self) -> list[DeploymentTarget]:
        """Return every stored target."""

    @abstractmethod
    async def get_by_id(self, target_id: str) -> DeploymentTarget | None:
        """Return the target with `target_id`, or None."""

    @abstractmethod
    async def add(self, target: DeploymentTarget) -> DeploymentTarget:
        """
        Store a new target.

        Returns:
            The stored copy, with a newly assigned id.
        """

    @abstractmethod
    async def update(self, target: DeploymentTarget) -> None:
        """
        Replace the stored target with the same id.

        Raises:
            FailedPreconditionError: If no target has that id.
        """

    @abstractmethod
    async def delete(self, target_id: str) -> bool:
        """
        Remove a target.

        Returns:
            True if a target was removed.
        """


class YamlLocationRegistry(LocationRegistry):
    """
    LocationRegistry backed by a YAML file.

    The file holds a single `locations` list. Writes go to a temporary
    sibling that is renamed over the original.

    Example:
        >>> registry = YamlLocationRegistry("~/.config/pnr-ops/locations.yml")
        >>> stored = await registry.add(DeploymentTarget(name="west", ...))
        >>> await registry.get_by_id(stored.id)
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    def _read(self) -> list[DeploymentTarget]:
        if not self.path.exists():
            return []

        try:
            with open(self.path) as f:
                data: Any = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise InternalError(
                f"Failed to read location registry: {e}",
                details={"path": str(self.path)},
            ) from e

        try:
            return [DeploymentTarget.model_validate(item) for item in data.get("locations", [])]
        except (AttributeError, ValidationError) as e:
            raise InternalError(
                f"Malformed location registry: {e}",
                details={"path": str(self.path)},
            ) from e

    def _write(self, targets: list[DeploymentTarget]) -> None:
        payload = {"locations": [target.model_dump() for target in targets]}
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w") as f:
                yaml.safe_dump(payload, f, sort_keys=False)
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except OSError as e:
            raise InternalError(
                f"Failed to write location registry: {e}",
                details={"path": str(self.path)},
            ) from e

    async def get_all(self) -> list[DeploymentTarget]:
        async with self._lock:
            return await asyncio.to_thread(self._read)

    async def get_by_id(self, target_id: str) -> DeploymentTarget | None:
        async with self._lock:
            targets = await asyncio.to_thread(self._read)
        return next((t for t in targets if t.id == target_id), None)

    async def add(self, target: DeploymentTarget) -> DeploymentTarget:
        stored = target.model_copy(update={"id": uuid.uuid4().hex})
        async with self._lock:
            targets = await asyncio.to_thread(self._read)
            targets.append(stored)
            await asyncio.to_thread(self._write, targets)

        logger.info(
            "Location added",
            extra={"location_id": stored.id, "domain_name": stored.domain_name},
        )
        return stored

    async def update(self, target: DeploymentTarget) -> None:
        async with self._lock:
            targets = await asyncio.to_thread(self._read)
            for index, existing in enumerate(targets):
                if target.id is not None and existing.id == target.id:
                    targets[index] = target
                    break
            else:
                raise FailedPreconditionError(
                    f"Location not found: {target.id}",
                    details={"location_id": target.id},
                )
            await asyncio.to_thread(self._write, targets)

        logger.info("Location updated", extra={"location_id": target.id})

    async def delete(self, target_id: str) -> bool:
        async with self._lock:
            targets = await asyncio.to_thread(self._read)
            remaining = [t for t in targets if t.id != target_id]
            if len(remaining) == len(targets):
                return False
            await asyncio.to_thread(self._write, remaining)

        logger.info("Location deleted", extra={"location_id": target_id})
        return True
