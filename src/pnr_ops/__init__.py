"""
PNR Ops - deployment and self-update tooling for the PNR game server.

This package provisions cloud hosts, mirrors the dedicated-server payload to
them over SSH/SFTP, and keeps a deployed server current by installing the
latest published release with backup-and-restore on failure.
"""

__version__ = "0.1.0"
