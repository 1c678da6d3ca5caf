"""
Outcome values returned by provisioning and deployment operations.

These operations never raise to their callers; they return a
DeploymentResult that carries either the created resources or the captured
exception.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pnr_ops.errors import OpsError


@dataclass(frozen=True)
class VMHandle:
    """
    Names and ids of the resources created for one server location.

    Attributes:
        resource_group: Resource group name ({name}-rg).
        virtual_network: Virtual network name ({name}-vnet).
        subnet: Subnet name ({name}-subnet).
        public_ip: Public IP name ({name}-ip).
        network_interface: Network interface name ({name}-ni).
        virtual_machine: Virtual machine name ({name}).
        domain_name: Public DNS name of the VM.
        resource_ids: Provider ids keyed by resource kind, where returned.
    """

    resource_group: str
    virtual_network: str
    subnet: str
    public_ip: str
    network_interface: str
    virtual_machine: str
    domain_name: str
    resource_ids: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeploymentResult:
    """
    Outcome of a build or deploy.

    Attributes:
        success: Whether the operation completed.
        message: Human-readable summary.
        error: Captured exception on failure.
        domain_name: Public DNS name, when one was produced.
        vm: Handle to the created resources, when provisioning ran.
    """

    success: bool
    message: str = ""
    error: BaseException | None = None
    domain_name: str | None = None
    vm: VMHandle | None = None

    @classmethod
    def failed(
        cls,
        message: str,
        error: BaseException | None = None,
        *,
        domain_name: str | None = None,
        vm: VMHandle | None = None,
    ) -> DeploymentResult:
        return cls(
            success=False,
            message=message,
            error=error,
            domain_name=domain_name,
            vm=vm,
        )

    @property
    def detail(self) -> str | None:
        """Describe the captured error, if any."""
        if self.error is None:
            return None
        if isinstance(self.error, OpsError):
            return f"{self.error.error_code}: {self.error.message}"
        return f"{type(self.error).__name__}: {self.error}"

    def __str__(self) -> str:
        return f"Success: {self.success}\n{self.message}"
