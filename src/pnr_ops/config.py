"""
Configuration management for PNR Ops.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/pnr-ops/config.yml or --config path)
3. Environment variables (PNR_OPS_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/pnr-ops/config.yml")
DEFAULT_ENV_PREFIX = "PNR_OPS_"

# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        format: Output format, 'json' or 'text'.
        log_to_stderr: Whether to log to stderr.
        log_file: Optional log file path.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    format: str = Field(
        default="json",
        description="Log output format: 'json' or 'text'",
    )
    log_to_stderr: bool = Field(
        default=True,
        description="Whether to log to stderr",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        # Normalize 'warn' to 'warning'
        if v_lower == "warn":
            return "warning"
        return v_lower

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        v_lower = v.lower()
        if v_lower not in {"json", "text"}:
            raise ValueError(f"Invalid log format: {v}. Must be 'json' or 'text'")
        return v_lower


# =============================================================================
# Self-Update Configuration
# =============================================================================


def _default_backup_dir() -> str:
    return str(Path(tempfile.gettempdir()) / "pnr_server_backup")


class UpdatesConfig(BaseModel):
    """Self-update configuration for a deployed server host.

    Attributes:
        repo_owner: Owner of the release repository.
        repo_name: Name of the release repository.
        api_base: Base URL of the release-hosting API.
        token: Optional token for private repositories.
        install_dir: Directory holding the running server's files.
        backup_dir: Fixed location of the single backup snapshot.
        version_file: Name of the version marker inside install_dir.
        process_name: Process name used to find the running server.
        executable: Server executable, relative to install_dir.
        launch_args: Fixed arguments passed to the server on start.
        stop_timeout_seconds: Bounded wait for each process to exit.
        settle_seconds: Fixed pause after stopping the server.
        request_timeout_seconds: HTTP timeout for feed and downloads.
        user_agent: User-Agent header sent to the release feed.
    """

    repo_owner: str = Field(
        default="rob011235",
        description="Owner of the release repository",
    )
    repo_name: str = Field(
        default="PointOfNoReturnGameServer",
        description="Name of the release repository",
    )
    api_base: str = Field(
        default="https://api.github.com",
        description="Base URL of the release-hosting API",
    )
    token: str | None = Field(
        default=None,
        description="Token for private repositories (optional)",
    )
    install_dir: str = Field(
        default="/opt/pnr-server",
        description="Directory holding the running server's files",
    )
    backup_dir: str = Field(
        default_factory=_default_backup_dir,
        description="Location of the single backup snapshot",
    )
    version_file: str = Field(
        default="version.txt",
        description="Version marker file name inside install_dir",
    )
    process_name: str = Field(
        default="godot_server",
        description="Process name of the running server",
    )
    executable: str = Field(
        default="godot_server",
        description="Server executable relative to install_dir",
    )
    launch_args: list[str] = Field(
        default_factory=lambda: ["--headless"],
        description="Fixed launch arguments",
    )
    stop_timeout_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Wait bound for each server process to exit",
    )
    settle_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Pause after stopping the server",
    )
    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="HTTP timeout for the release feed and downloads",
    )
    user_agent: str = Field(
        default="PNRServerUpdater",
        description="User-Agent header for release feed requests",
    )

    @field_validator("launch_args", mode="before")
    @classmethod
    def validate_launch_args(cls, v: Any) -> Any:
        """Accept a single argument given as a scalar."""
        if isinstance(v, (str, int, float)):
            return [str(v)]
        return v


# =============================================================================
# Remote Deployment Configuration
# =============================================================================


class RemoteConfig(BaseModel):
    """SSH/SFTP deployment configuration.

    Attributes:
        port: SSH port used for both shell and file-transfer channels.
        relative_path: Remote directory under /home/{user}.
        payload_dir: Local directory mirrored to the remote host.
        server_binary: Server executable name inside the payload.
        stdout_file: Remote file receiving the server's stdout.
        stderr_file: Remote file receiving the server's stderr.
        data_file: Server data file name under /home/{user}.
        poll_interval_seconds: Upload completion polling interval.
        connect_timeout_seconds: SSH connect timeout.
    """

    port: int = Field(
        default=22,
        ge=1,
        le=65535,
        description="SSH port",
    )
    relative_path: str = Field(
        default="dedicated_server",
        description="Remote directory under /home/{user}",
    )
    payload_dir: str = Field(
        default="dedicated_server",
        description="Local directory mirrored to the remote host",
    )
    server_binary: str = Field(
        default="PNRServerLynux.x86_64",
        description="Server executable inside the payload",
    )
    stdout_file: str = Field(
        default="pnr.out",
        description="Remote stdout redirect target",
    )
    stderr_file: str = Field(
        default="pnr.err",
        description="Remote stderr redirect target",
    )
    data_file: str = Field(
        default="server_data.db",
        description="Server data file under /home/{user}",
    )
    poll_interval_seconds: float = Field(
        default=0.1,
        gt=0,
        description="Upload completion polling interval",
    )
    connect_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="SSH connect timeout",
    )


# =============================================================================
# Cloud Provisioning Configuration
# =============================================================================


class CloudConfig(BaseModel):
    """Azure provisioning configuration.

    Attributes:
        tenant_id: Tenant used for interactive browser authentication.
        subscription_id: Subscription to provision into. When unset, the
            first subscription visible to the credential is used.
        location: Default region.
        dns_suffix: Provider domain appended to public DNS labels.
        vnet_address_prefix: Private address block of the virtual network.
        subnet_address_prefix: Sub-block of the subnet.
        public_ip_sku: Public IP SKU.
        accelerated_networking: Request accelerated networking on the NIC.
        vm_size: VM size class.
        image_publisher: OS image publisher.
        image_offer: OS image offer.
        image_sku: OS image SKU.
        image_version: OS image version.
        spot: Use low-priority spot billing.
        max_price: Spot price cap (-1 caps at the on-demand price).
        eviction_policy: Spot eviction policy.
    """

    tenant_id: str = Field(
        default="",
        description="Tenant for interactive browser authentication",
    )
    subscription_id: str | None = Field(
        default=None,
        description="Subscription id (defaults to the first visible one)",
    )
    location: str = Field(
        default="westus3",
        description="Default region",
    )
    dns_suffix: str = Field(
        default="cloudapp.azure.com",
        description="Provider domain for public DNS labels",
    )
    vnet_address_prefix: str = Field(
        default="172.16.0.0/16",
        description="Virtual network address block",
    )
    subnet_address_prefix: str = Field(
        default="172.16.0.0/24",
        description="Subnet address block",
    )
    public_ip_sku: str = Field(
        default="Basic",
        description="Public IP SKU",
    )
    accelerated_networking: bool = Field(
        default=True,
        description="Request accelerated networking",
    )
    vm_size: str = Field(
        default="Standard_DS1_v2",
        description="VM size class",
    )
    image_publisher: str = Field(default="Canonical")
    image_offer: str = Field(default="ubuntu-24_04-lts")
    image_sku: str = Field(default="server")
    image_version: str = Field(default="latest")
    spot: bool = Field(
        default=True,
        description="Use spot billing",
    )
    max_price: float = Field(
        default=-1.0,
        description="Spot price cap",
    )
    eviction_policy: str = Field(
        default="Deallocate",
        description="Spot eviction policy",
    )

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        """Normalize region names to the provider's lowercase form."""
        normalized = v.replace(" ", "").lower()
        if not normalized:
            raise ValueError("Location must not be empty")
        return normalized


# =============================================================================
# Registry Configuration
# =============================================================================


def _default_registry_path() -> str:
    return str(Path.home() / ".config" / "pnr-ops" / "locations.yml")


class RegistryConfig(BaseModel):
    """Location registry configuration.

    Attributes:
        path: YAML file holding known deployment targets.
    """

    path: str = Field(
        default_factory=_default_registry_path,
        description="YAML file holding deployment targets",
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Built from the layers described in the module docstring.

    Attributes:
        logging: Logging configuration.
        updates: Self-update configuration.
        remote: SSH/SFTP deployment configuration.
        cloud: Cloud provisioning configuration.
        registry: Location registry configuration.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    updates: UpdatesConfig = Field(
        default_factory=UpdatesConfig,
        description="Self-update configuration",
    )
    remote: RemoteConfig = Field(
        default_factory=RemoteConfig,
        description="Remote deployment configuration",
    )
    cloud: CloudConfig = Field(
        default_factory=CloudConfig,
        description="Cloud provisioning configuration",
    )
    registry: RegistryConfig = Field(
        default_factory=RegistryConfig,
        description="Location registry configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    # Comma-separated lists (e.g. launch arguments)
    if "," in value:
        return [item.strip() for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    - Prefix: PNR_OPS_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: PNR_OPS_UPDATES__INSTALL_DIR=/srv/pnr

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def build_cli_parser(add_help: bool = True) -> argparse.ArgumentParser:
    """
    Build the parser for the global configuration options.

    The command line tool extends this parser with its subcommands.
    """
    parser = argparse.ArgumentParser(
        prog="pnr-ops",
        description="PNR server provisioning, deployment and self-update",
        add_help=add_help,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )

    parser.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Override log format",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    return parser


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse the global command-line options.

    Unknown arguments (subcommands and their options) are ignored.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed overrides.
    """
    parsed, _unknown = build_cli_parser(add_help=False).parse_known_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    logging_overrides: dict[str, Any] = {}
    if parsed.log_level:
        logging_overrides["level"] = parsed.log_level
    if parsed.log_format:
        logging_overrides["format"] = parsed.log_format
    if parsed.debug:
        logging_overrides["level"] = "debug"
    if logging_overrides:
        result["logging"] = logging_overrides

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> config.remote.port
        22
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
