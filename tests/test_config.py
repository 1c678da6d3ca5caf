"""
Tests for the configuration module.

This test module validates:
- Configuration loading from YAML files
- Environment variable overrides
- CLI argument overrides
- Configuration precedence (defaults < YAML < env vars < CLI args)
- Pydantic model validation with invalid inputs
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest import mock

import pytest
import yaml
from pydantic import ValidationError

from pnr_ops.config import (
    AppConfig,
    CloudConfig,
    LoggingConfig,
    RemoteConfig,
    UpdatesConfig,
    _deep_merge,
    _load_env_config,
    _load_yaml_config,
    _parse_cli_args,
    _parse_env_value,
    load_config,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def sample_yaml_config() -> dict[str, Any]:
    """Sample YAML configuration for testing."""
    return {
        "logging": {"level": "debug", "format": "text"},
        "updates": {
            "install_dir": "/srv/pnr",
            "repo_owner": "example",
            "launch_args": ["--headless", "--port", "7777"],
        },
        "remote": {"port": 2222},
        "cloud": {"location": "East US", "tenant_id": "tenant-1"},
    }


@pytest.fixture
def config_file(tmp_path: Path, sample_yaml_config: dict[str, Any]) -> Path:
    """Write the sample configuration to a file."""
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(sample_yaml_config))
    return path


@pytest.fixture
def clean_env() -> Any:
    """Run with no PNR_OPS_ variables set."""
    with mock.patch.dict("os.environ", {}, clear=True):
        yield


# =============================================================================
# Model Defaults and Validation
# =============================================================================


class TestModelDefaults:
    """Tests for configuration model defaults."""

    def test_app_config_defaults(self) -> None:
        """Test AppConfig builds with every section defaulted."""
        config = AppConfig()

        assert config.logging.level == "info"
        assert config.logging.format == "json"
        assert config.updates.version_file == "version.txt"
        assert config.updates.process_name == "godot_server"
        assert config.updates.launch_args == ["--headless"]
        assert config.updates.stop_timeout_seconds == 30.0
        assert config.updates.settle_seconds == 2.0
        assert config.updates.backup_dir.endswith("pnr_server_backup")
        assert config.remote.port == 22
        assert config.remote.relative_path == "dedicated_server"
        assert config.remote.server_binary == "PNRServerLynux.x86_64"
        assert config.cloud.location == "westus3"
        assert config.cloud.vm_size == "Standard_DS1_v2"
        assert config.cloud.spot is True
        assert config.cloud.max_price == -1.0
        assert config.registry.path.endswith("locations.yml")

    def test_launch_args_not_shared(self) -> None:
        """Test list defaults are independent between instances."""
        first = UpdatesConfig()
        first.launch_args.append("--verbose")
        assert UpdatesConfig().launch_args == ["--headless"]


class TestValidation:
    """Tests for validators."""

    def test_log_level_normalized(self) -> None:
        """Test log levels are lowercased and warn becomes warning."""
        assert LoggingConfig(level="WARN").level == "warning"
        assert LoggingConfig(level="Debug").level == "debug"

    def test_invalid_log_level(self) -> None:
        """Test invalid log level is rejected."""
        with pytest.raises(ValidationError):
            LoggingConfig(level="verbose")

    def test_invalid_log_format(self) -> None:
        """Test invalid log format is rejected."""
        with pytest.raises(ValidationError):
            LoggingConfig(format="xml")

    def test_location_normalized(self) -> None:
        """Test region display names are normalized."""
        assert CloudConfig(location="West US 3").location == "westus3"

    def test_empty_location_rejected(self) -> None:
        """Test blank region is rejected."""
        with pytest.raises(ValidationError):
            CloudConfig(location="  ")

    def test_port_range(self) -> None:
        """Test SSH port must be a valid TCP port."""
        with pytest.raises(ValidationError):
            RemoteConfig(port=0)
        with pytest.raises(ValidationError):
            RemoteConfig(port=70000)

    def test_negative_timeouts_rejected(self) -> None:
        """Test negative waits are rejected."""
        with pytest.raises(ValidationError):
            UpdatesConfig(stop_timeout_seconds=-1)


# =============================================================================
# Helper Functions
# =============================================================================


class TestDeepMerge:
    """Tests for _deep_merge."""

    def test_nested_merge(self) -> None:
        """Test nested dictionaries are merged key by key."""
        base = {"updates": {"install_dir": "/a", "token": None}, "remote": {"port": 22}}
        override = {"updates": {"install_dir": "/b"}}

        result = _deep_merge(base, override)

        assert result == {"updates": {"install_dir": "/b", "token": None}, "remote": {"port": 22}}
        assert base["updates"]["install_dir"] == "/a"

    def test_non_dict_replaced(self) -> None:
        """Test scalars and lists are replaced."""
        assert _deep_merge({"a": [1]}, {"a": [2]}) == {"a": [2]}


class TestYamlLoading:
    """Tests for _load_yaml_config."""

    def test_load(self, config_file: Path) -> None:
        """Test YAML file is loaded."""
        data = _load_yaml_config(config_file)
        assert data["remote"]["port"] == 2222

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            _load_yaml_config(tmp_path / "missing.yml")

    def test_empty_file(self, tmp_path: Path) -> None:
        """Test empty file yields an empty dict."""
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert _load_yaml_config(path) == {}


class TestEnvParsing:
    """Tests for environment variable parsing."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("true", True),
            ("Yes", True),
            ("off", False),
            ("22", 22),
            ("0.5", 0.5),
            ("--headless,--port,7777", ["--headless", "--port", "7777"]),
            ("/srv/pnr", "/srv/pnr"),
        ],
    )
    def test_parse_env_value(self, raw: str, expected: Any) -> None:
        """Test values are converted to the natural type."""
        assert _parse_env_value(raw) == expected

    def test_load_env_config_nesting(self) -> None:
        """Test double underscores nest keys."""
        env = {
            "PNR_OPS_UPDATES__INSTALL_DIR": "/srv/pnr",
            "PNR_OPS_REMOTE__PORT": "2200",
            "UNRELATED": "x",
        }
        with mock.patch.dict("os.environ", env, clear=True):
            result = _load_env_config()

        assert result == {"updates": {"install_dir": "/srv/pnr"}, "remote": {"port": 2200}}


class TestCliParsing:
    """Tests for _parse_cli_args."""

    def test_global_options(self) -> None:
        """Test global options become overrides."""
        result = _parse_cli_args(["--config", "/tmp/c.yml", "--log-level", "error", "update"])

        assert result["_config_path"] == "/tmp/c.yml"
        assert result["logging"] == {"level": "error"}

    def test_debug_flag(self) -> None:
        """Test --debug forces debug level."""
        result = _parse_cli_args(["--log-level", "error", "--debug"])
        assert result["logging"]["level"] == "debug"

    def test_subcommand_arguments_ignored(self) -> None:
        """Test unknown subcommand arguments are ignored."""
        result = _parse_cli_args(["create", "west", "--user", "pnr", "--password", "x"])
        assert result == {}


# =============================================================================
# load_config
# =============================================================================


class TestLoadConfig:
    """Tests for layered configuration loading."""

    def test_defaults_only(self, clean_env: None, tmp_path: Path) -> None:
        """Test defaults when no file, env or CLI overrides exist."""
        with mock.patch("pnr_ops.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yml"):
            config = load_config(cli_args=[])

        assert config.logging.level == "info"
        assert config.remote.port == 22

    def test_yaml_layer(self, clean_env: None, config_file: Path) -> None:
        """Test YAML values override defaults."""
        config = load_config(config_path=config_file, cli_args=[])

        assert config.logging.level == "debug"
        assert config.updates.install_dir == "/srv/pnr"
        assert config.updates.launch_args == ["--headless", "--port", "7777"]
        assert config.remote.port == 2222
        assert config.cloud.location == "eastus"

    def test_config_path_from_cli(self, clean_env: None, config_file: Path) -> None:
        """Test --config selects the file."""
        config = load_config(cli_args=["--config", str(config_file)])
        assert config.remote.port == 2222

    def test_precedence(self, config_file: Path) -> None:
        """Test defaults < YAML < env < CLI."""
        env = {
            "PNR_OPS_REMOTE__PORT": "2022",
            "PNR_OPS_LOGGING__LEVEL": "warning",
        }
        with mock.patch.dict("os.environ", env, clear=True):
            config = load_config(
                config_path=config_file,
                cli_args=["--log-level", "error"],
            )

        assert config.remote.port == 2022
        assert config.logging.level == "error"
        assert config.updates.install_dir == "/srv/pnr"

    def test_single_launch_arg_from_env(self, tmp_path: Path) -> None:
        """Test a launch argument without commas overrides the list."""
        env = {"PNR_OPS_UPDATES__LAUNCH_ARGS": "--headless"}
        with (
            mock.patch.dict("os.environ", env, clear=True),
            mock.patch("pnr_ops.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yml"),
        ):
            config = load_config(cli_args=[])

        assert config.updates.launch_args == ["--headless"]

    def test_launch_args_list_from_env(self, tmp_path: Path) -> None:
        """Test comma-separated launch arguments become a list."""
        env = {"PNR_OPS_UPDATES__LAUNCH_ARGS": "--headless,--port,7777"}
        with (
            mock.patch.dict("os.environ", env, clear=True),
            mock.patch("pnr_ops.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yml"),
        ):
            config = load_config(cli_args=[])

        assert config.updates.launch_args == ["--headless", "--port", "7777"]

    def test_missing_explicit_file(self, clean_env: None, tmp_path: Path) -> None:
        """Test an explicit missing file is an error."""
        with pytest.raises(FileNotFoundError):
            load_config(config_path=tmp_path / "missing.yml", cli_args=[])

    def test_invalid_values(self, clean_env: None, tmp_path: Path) -> None:
        """Test invalid file values raise ValidationError."""
        path = tmp_path / "bad.yml"
        path.write_text(yaml.safe_dump({"remote": {"port": "not-a-port"}}))

        with pytest.raises(ValidationError):
            load_config(config_path=path, cli_args=[])
