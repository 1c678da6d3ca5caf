"""
Self-update mechanism for a deployed PNR server.

This package implements the self-update transaction:
- Release feed lookup and artifact resolution
- Streamed artifact download and overwrite installation
- Single-snapshot backup and restore
- Local server process stop/start
- Version marker tracking
- SelfUpdater orchestration with tracked UpdateState
"""

from pnr_ops.updates.archive import (
    ArchiveInstaller,
    extract_archive,
    resolve_payload_root,
)
from pnr_ops.updates.backup import BackupVault, copy_tree_overwriting
from pnr_ops.updates.process import ProcessSupervisor, find_processes
from pnr_ops.updates.release_feed import Asset, Release, ReleaseFeedClient
from pnr_ops.updates.updater import SelfUpdater, UpdateState, UpdateStatus
from pnr_ops.updates.version import DEFAULT_VERSION, VersionMarker

__all__ = [
    # Release feed
    "ReleaseFeedClient",
    "Release",
    "Asset",
    # Installation
    "ArchiveInstaller",
    "extract_archive",
    "resolve_payload_root",
    # Backup
    "BackupVault",
    "copy_tree_overwriting",
    # Process control
    "ProcessSupervisor",
    "find_processes",
    # Version
    "VersionMarker",
    "DEFAULT_VERSION",
    # Orchestration
    "SelfUpdater",
    "UpdateState",
    "UpdateStatus",
]
