"""
Remote deployment over SSH and SFTP.
"""

from pnr_ops.remote.deployer import RemoteDeployer
from pnr_ops.remote.session import RemoteSession

__all__ = [
    "RemoteDeployer",
    "RemoteSession",
]
