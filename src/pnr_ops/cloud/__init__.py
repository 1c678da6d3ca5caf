"""
Cloud provisioning of server VMs.
"""

from pnr_ops.cloud.provisioner import (
    CloudClients,
    ResourceNames,
    VMProvisioner,
    create_cloud_clients,
    sanitize_name,
)

__all__ = [
    "CloudClients",
    "ResourceNames",
    "VMProvisioner",
    "create_cloud_clients",
    "sanitize_name",
]
