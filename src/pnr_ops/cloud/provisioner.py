"""
Azure VM provisioning for server locations.

VMProvisioner.build() creates, strictly in order, a resource group, virtual
network, subnet, public IP with a DNS label, network interface and a spot
priced virtual machine, all named after a DNS-safe form of the location name.
An existing resource group of the same name is deleted first, so a rebuild
always starts from nothing. The Azure SDK is blocking; every call runs in a
worker thread and status lines are reported between steps.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from azure.identity import InteractiveBrowserCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient, SubscriptionClient

from pnr_ops.errors import FailedPreconditionError, InvalidArgumentError
from pnr_ops.logging import get_logger
from pnr_ops.results import DeploymentResult, VMHandle
from pnr_ops.status import StatusCallback, StatusReporter

if TYPE_CHECKING:
    from pnr_ops.config import CloudConfig

logger = get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9-]")
POWER_STATE_PREFIX = "PowerState/"


def sanitize_name(name: str) -> str:
    """
    Reduce a display name to a DNS-safe resource prefix.

    Whitespace runs become "-", every character outside [A-Za-z0-9-] is
    dropped, and the result is lowercased.

    Example:
        >>> sanitize_name("West Coast #1")
        'west-coast-1'
    """
    collapsed = _WHITESPACE_RE.sub("-", name.strip())
    return _UNSAFE_CHARS_RE.sub("", collapsed).lower()


def normalize_region(location: str) -> str:
    return location.replace(" ", "").lower()


@dataclass(frozen=True)
class ResourceNames:
    """Resource names derived from a sanitized location name."""

    base: str

    @property
    def resource_group(self) -> str:
        return f"{self.base}-rg"

    @property
    def virtual_network(self) -> str:
        return f"{self.base}-vnet"

    @property
    def subnet(self) -> str:
        return f"{self.base}-subnet"

    @property
    def public_ip(self) -> str:
        return f"{self.base}-ip"

    @property
    def network_interface(self) -> str:
        return f"{self.base}-ni"

    @property
    def virtual_machine(self) -> str:
        return self.base


@dataclass
class CloudClients:
    """Management clients for one subscription."""

    resource: ResourceManagementClient
    network: NetworkManagementClient
    compute: ComputeManagementClient


def _default_subscription_id(credential: Any) -> str:
    for subscription in SubscriptionClient(credential).subscriptions.list():
        if subscription.subscription_id:
            return subscription.subscription_id
    raise FailedPreconditionError("No Azure subscription is visible to the signed-in account")


def create_cloud_clients(config: CloudConfig) -> CloudClients:
    """
    Authenticate interactively and create management clients.

    Opens a browser for sign-in against the configured tenant. The
    configured subscription is used, else the first one visible.
    """
    credential = InteractiveBrowserCredential(tenant_id=config.tenant_id or None)
    subscription_id = config.subscription_id or _default_subscription_id(credential)
    logger.debug("Using Azure subscription", extra={"subscription_id": subscription_id})
    return CloudClients(
        resource=ResourceManagementClient(credential, subscription_id),
        network=NetworkManagementClient(credential, subscription_id),
        compute=ComputeManagementClient(credential, subscription_id),
    )


def _wait(begin: Callable[..., Any], *args: Any) -> Any:
    """Start a long-running operation and block until it completes."""
    return begin(*args).result()


class VMProvisioner:
    """
    Builds and inspects the VM hosting one server location.

    Example:
        >>> provisioner = VMProvisioner(config.cloud, status_callback=print)
        >>> result = await provisioner.build("West Coast", "pnr", "s3cret!")
        >>> result.domain_name
        'west-coast.westus3.cloudapp.azure.com'
    """

    def __init__(
        self,
        config: CloudConfig,
        status_callback: StatusCallback | None = None,
        clients_factory: Callable[[CloudConfig], CloudClients] | None = None,
    ) -> None:
        """
        Initialize the provisioner.

        Args:
            config: Cloud configuration (tenant, region and VM defaults).
            status_callback: Receiver of human-readable progress lines.
            clients_factory: Creates management clients; defaults to
                interactive browser sign-in.
        """
        self.config = config
        self._clients_factory = clients_factory or create_cloud_clients
        self._reporter = StatusReporter(status_callback, source="provisioner", log=logger)

    def domain_name_for(self, name: str, region: str | None = None) -> str:
        """Public DNS name a VM built under `name` receives."""
        region = normalize_region(region or self.config.location)
        return f"{sanitize_name(name)}.{region}.{self.config.dns_suffix}"

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(func, *args)

    async def _wait(self, begin: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(_wait, begin, *args)

    async def build(
        self,
        name: str,
        admin_user: str,
        admin_password: str,
        location: str | None = None,
    ) -> DeploymentResult:
        """
        Create the full resource set for a location.

        Each step completes before the next begins; the first failure stops
        the sequence. Nothing is raised to the caller.

        Args:
            name: Location display name (sanitized before use).
            admin_user: VM administrator user.
            admin_password: VM administrator password.
            location: Region (defaults to the configured region).

        Returns:
            A DeploymentResult with the domain name and VM handle on success,
            or the captured exception on failure.
        """
        base = sanitize_name(name)
        if not base:
            error = InvalidArgumentError(
                "Location name has no DNS-safe characters",
                details={"name": name},
            )
            await self._reporter.error(error.message)
            return DeploymentResult.failed(error.message, error)

        region = normalize_region(location or self.config.location)
        names = ResourceNames(base)
        domain_name = f"{base}.{region}.{self.config.dns_suffix}"
        cfg = self.config

        try:
            clients = await self._call(self._clients_factory, cfg)
            groups = clients.resource.resource_groups
            network = clients.network

            if await self._call(groups.check_existence, names.resource_group):
                await self._reporter.report("Found existing server. Deleting and recreating.")
                await self._wait(groups.begin_delete, names.resource_group)

            await self._call(
                groups.create_or_update,
                names.resource_group,
                {"location": region},
            )
            await self._reporter.report("Created resource group")

            await self._wait(
                network.virtual_networks.begin_create_or_update,
                names.resource_group,
                names.virtual_network,
                {
                    "location": region,
                    "address_space": {"address_prefixes": [cfg.vnet_address_prefix]},
                },
            )
            await self._reporter.report("Created vnet")

            subnet = await self._wait(
                network.subnets.begin_create_or_update,
                names.resource_group,
                names.virtual_network,
                names.subnet,
                {"address_prefix": cfg.subnet_address_prefix},
            )
            await self._reporter.report("Created subnet")

            public_ip = await self._wait(
                network.public_ip_addresses.begin_create_or_update,
                names.resource_group,
                names.public_ip,
                {
                    "location": region,
                    "sku": {"name": cfg.public_ip_sku},
                    "public_ip_allocation_method": "Static",
                    "public_ip_address_version": "IPv4",
                    "dns_settings": {"domain_name_label": base},
                },
            )
            await self._reporter.report("Created ip address")

            nic = await self._wait(
                network.network_interfaces.begin_create_or_update,
                names.resource_group,
                names.network_interface,
                {
                    "location": region,
                    "ip_configurations": [
                        {
                            "name": "primary",
                            "primary": True,
                            "subnet": {"id": subnet.id},
                            "public_ip_address": {"id": public_ip.id},
                        }
                    ],
                    "enable_accelerated_networking": cfg.accelerated_networking,
                },
            )
            await self._reporter.report(
                f"Created network interface with domain name {domain_name}"
            )

            vm = await self._wait(
                clients.compute.virtual_machines.begin_create_or_update,
                names.resource_group,
                names.virtual_machine,
                self._vm_parameters(names, region, admin_user, admin_password, nic.id),
            )
            await self._reporter.report("Created virtual machine")

        except Exception as e:
            logger.exception("VM build failed", extra={"resource_group": names.resource_group})
            message = f"Failed to build server: {e}"
            await self._reporter.error(message)
            return DeploymentResult.failed(message, e)

        handle = VMHandle(
            resource_group=names.resource_group,
            virtual_network=names.virtual_network,
            subnet=names.subnet,
            public_ip=names.public_ip,
            network_interface=names.network_interface,
            virtual_machine=names.virtual_machine,
            domain_name=domain_name,
            resource_ids={
                kind: resource_id
                for kind, resource_id in (
                    ("subnet", getattr(subnet, "id", None)),
                    ("public_ip", getattr(public_ip, "id", None)),
                    ("network_interface", getattr(nic, "id", None)),
                    ("virtual_machine", getattr(vm, "id", None)),
                )
                if isinstance(resource_id, str)
            },
        )
        return DeploymentResult(
            success=True,
            message="Virtual machine created successfully.",
            domain_name=domain_name,
            vm=handle,
        )

    def _vm_parameters(
        self,
        names: ResourceNames,
        region: str,
        admin_user: str,
        admin_password: str,
        nic_id: str,
    ) -> dict[str, Any]:
        cfg = self.config
        parameters: dict[str, Any] = {
            "location": region,
            "storage_profile": {
                "image_reference": {
                    "publisher": cfg.image_publisher,
                    "offer": cfg.image_offer,
                    "sku": cfg.image_sku,
                    "version": cfg.image_version,
                }
            },
            "hardware_profile": {"vm_size": cfg.vm_size},
            "os_profile": {
                "computer_name": names.virtual_machine,
                "admin_username": admin_user,
                "admin_password": admin_password,
            },
            "network_profile": {
                "network_interfaces": [{"id": nic_id, "primary": True}],
            },
        }
        if cfg.spot:
            parameters["priority"] = "Spot"
            parameters["eviction_policy"] = cfg.eviction_policy
            parameters["billing_profile"] = {"max_price": cfg.max_price}
        return parameters

    async def status(self, name: str) -> str:
        """
        Describe the power state of the VM built under `name`.

        Returns:
            The display text of the first power-state status (e.g.
            "VM running"), "Unknown" when none is reported, or an explanatory
            string on any error.
        """
        names = ResourceNames(sanitize_name(name))
        try:
            clients = await self._call(self._clients_factory, self.config)
            view = await self._call(
                clients.compute.virtual_machines.instance_view,
                names.resource_group,
                names.virtual_machine,
            )
        except Exception as e:
            logger.warning(
                f"Could not read VM status: {e}",
                extra={"resource_group": names.resource_group},
            )
            return f"Error retrieving VM status: {e}"

        for vm_status in view.statuses or []:
            if (vm_status.code or "").startswith(POWER_STATE_PREFIX):
                return vm_status.display_status or ""
        return "Unknown"
