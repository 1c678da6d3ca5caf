"""
End-to-end creation of a new server location.

create_location() provisions a VM, deploys the server payload to it, records
the location in the registry and hands the new domain to an optional
on_ready hook. Each stage runs only if the previous one succeeded; every
outcome is reported through the status callback and returned as a
DeploymentResult. A VM left behind by a failed deploy is not torn down;
running create_location() again with the same name rebuilds it.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from pnr_ops.cloud.provisioner import VMProvisioner
from pnr_ops.errors import InvalidArgumentError, OpsError
from pnr_ops.logging import get_logger
from pnr_ops.registry import DeploymentTarget, LocationRegistry, YamlLocationRegistry
from pnr_ops.remote.deployer import RemoteDeployer
from pnr_ops.results import DeploymentResult
from pnr_ops.status import StatusCallback, StatusReporter

if TYPE_CHECKING:
    from pnr_ops.config import AppConfig

logger = get_logger(__name__)

ReadyHook = Callable[[str], Awaitable[None] | None]


class DeploymentOrchestrator:
    """
    Provision, deploy and register a server location in one call.

    Example:
        >>> orchestrator = DeploymentOrchestrator.from_config(config, status_callback=print)
        >>> result = await orchestrator.create_location("West Coast", "pnr", "s3cret!")
        >>> print(result)
        Success: True
        Server ready at west-coast.westus3.cloudapp.azure.com
    """

    def __init__(
        self,
        provisioner: VMProvisioner,
        deployer: RemoteDeployer,
        registry: LocationRegistry,
        *,
        relative_path: str = "dedicated_server",
        status_callback: StatusCallback | None = None,
        on_ready: ReadyHook | None = None,
    ) -> None:
        self.provisioner = provisioner
        self.deployer = deployer
        self.registry = registry
        self.relative_path = relative_path
        self.on_ready = on_ready
        self._reporter = StatusReporter(status_callback, source="orchestrator", log=logger)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        status_callback: StatusCallback | None = None,
        on_ready: ReadyHook | None = None,
    ) -> DeploymentOrchestrator:
        """Wire the provisioner, deployer and registry from configuration."""
        return cls(
            VMProvisioner(config.cloud, status_callback=status_callback),
            RemoteDeployer.from_config(config.remote, status_callback=status_callback),
            YamlLocationRegistry(config.registry.path),
            relative_path=config.remote.relative_path,
            status_callback=status_callback,
            on_ready=on_ready,
        )

    async def create_location(
        self,
        name: str,
        username: str,
        password: str,
        location: str | None = None,
    ) -> DeploymentResult:
        """
        Create a new server location.

        Args:
            name: Location display name.
            username: Admin and SSH user for the VM.
            password: Admin and SSH password for the VM.
            location: Region (defaults to the configured region).

        Returns:
            The outcome of the last stage that ran.
        """
        try:
            return await self._create_location(name, username, password, location)
        except Exception as e:
            logger.exception("Location creation failed", extra={"location_name": name})
            message = f"Failed to create location {name}: {e}"
            await self._reporter.error(message)
            return DeploymentResult.failed(message, e)

    async def _create_location(
        self,
        name: str,
        username: str,
        password: str,
        location: str | None,
    ) -> DeploymentResult:
        missing = [
            field_name
            for field_name, value in (("name", name), ("username", username), ("password", password))
            if not value
        ]
        if missing:
            error = InvalidArgumentError(
                "Missing required fields: " + ", ".join(missing),
                details={"missing": missing},
            )
            await self._reporter.error(error.message)
            return DeploymentResult.failed(error.message, error)

        await self._reporter.report(f"Building server {name}...")
        built = await self.provisioner.build(name, username, password, location)
        if not built.success or not built.domain_name:
            await self._reporter.error(f"Server build failed: {built.message}")
            return built

        await self._reporter.report(f"Server built at {built.domain_name}. Deploying...")
        target = DeploymentTarget(
            name=name,
            domain_name=built.domain_name,
            username=username,
            password=password,
            relative_path=self.relative_path,
        )
        deployed = await self.deployer.deploy(target)
        if not deployed.success:
            await self._reporter.error(f"Deployment failed: {deployed.message}")
            return DeploymentResult.failed(
                deployed.message,
                deployed.error,
                domain_name=built.domain_name,
                vm=built.vm,
            )

        try:
            stored = await self.registry.add(target)
        except OpsError as e:
            message = f"Could not save location: {e.message}"
            await self._reporter.error(message)
            return DeploymentResult.failed(
                message, e, domain_name=built.domain_name, vm=built.vm
            )
        await self._reporter.report(f"Saved location {stored.name} ({stored.id})")

        await self._notify_ready(built.domain_name)

        message = f"Server ready at {built.domain_name}"
        await self._reporter.report(message)
        return DeploymentResult(
            success=True,
            message=message,
            domain_name=built.domain_name,
            vm=built.vm,
        )

    async def _notify_ready(self, domain_name: str) -> None:
        if self.on_ready is None:
            return
        try:
            result = self.on_ready(domain_name)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception("Ready hook failed", extra={"domain_name": domain_name})
            await self._reporter.warning(f"Could not connect to {domain_name}: {e}")
