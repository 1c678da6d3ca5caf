"""
Command line interface for PNR Ops.

Usage:
    pnr-ops [--config PATH] [--log-level LEVEL] [--debug] <command> ...

Commands:
    update                      Self-update the server on this host
    create NAME --user U --password P [--location L]
                                Provision, deploy and register a location
    start ID | stop ID | restart ID
                                Control the server at a registered location
    status NAME                 Show the power state of a location's VM
    list                        List registered locations
    download ID LOCAL [--remote PATH]
                                Fetch the server data file from a location
    upload ID LOCAL [--remote PATH]
                                Push a file to a location

Progress lines are printed to stdout; logs go to stderr. The exit code is 0
on success and 1 on failure.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from pydantic import ValidationError

from pnr_ops.cloud.provisioner import VMProvisioner
from pnr_ops.config import AppConfig, build_cli_parser, load_config
from pnr_ops.errors import OpsError
from pnr_ops.logging import get_logger, setup_logging
from pnr_ops.orchestrator import DeploymentOrchestrator
from pnr_ops.registry import DeploymentTarget, YamlLocationRegistry
from pnr_ops.remote.deployer import RemoteDeployer
from pnr_ops.runner import OperationRunner
from pnr_ops.updates.updater import SelfUpdater, UpdateState

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


def print_status(message: str) -> None:
    print(message, flush=True)


def build_parser() -> argparse.ArgumentParser:
    """Build the full parser: global options plus subcommands."""
    parser = build_cli_parser()
    commands = parser.add_subparsers(dest="command", metavar="<command>", required=True)

    commands.add_parser("update", help="Self-update the server on this host")

    create = commands.add_parser("create", help="Provision, deploy and register a location")
    create.add_argument("name", help="Location name")
    create.add_argument("--user", required=True, help="Admin and SSH user")
    create.add_argument("--password", required=True, help="Admin and SSH password")
    create.add_argument("--location", help="Region (defaults to cloud.location)")

    for action in ("start", "stop", "restart"):
        sub = commands.add_parser(action, help=f"{action.capitalize()} the server at a location")
        sub.add_argument("id", help="Location id")

    status = commands.add_parser("status", help="Show the power state of a location's VM")
    status.add_argument("name", help="Location name")

    commands.add_parser("list", help="List registered locations")

    download = commands.add_parser("download", help="Fetch a file from a location")
    download.add_argument("id", help="Location id")
    download.add_argument("local", help="Local destination path")
    download.add_argument("--remote", help="Remote path (defaults to the server data file)")

    upload = commands.add_parser("upload", help="Push a file to a location")
    upload.add_argument("id", help="Location id")
    upload.add_argument("local", help="Local file to upload")
    upload.add_argument("--remote", help="Remote path (defaults to the server data file)")

    return parser


async def _lookup(config: AppConfig, location_id: str) -> DeploymentTarget | None:
    target = await YamlLocationRegistry(config.registry.path).get_by_id(location_id)
    if target is None:
        print_status(f"Unknown location: {location_id}")
    return target


async def _run_update(config: AppConfig, runner: OperationRunner) -> int:
    updater = SelfUpdater.from_config(config.updates, status_callback=print_status)
    runner.submit(str(updater.install_dir), updater.check_and_update())
    await runner.wait(str(updater.install_dir))
    return EXIT_FAILURE if updater.state == UpdateState.FAILED else EXIT_OK


async def _run_create(args: argparse.Namespace, config: AppConfig, runner: OperationRunner) -> int:
    orchestrator = DeploymentOrchestrator.from_config(config, status_callback=print_status)
    key = f"create:{args.name}"
    runner.submit(
        key,
        orchestrator.create_location(args.name, args.user, args.password, args.location),
    )
    result = await runner.wait(key)
    print_status(str(result))
    if result.detail:
        print_status(f"Cause: {result.detail}")
    return EXIT_OK if result.success else EXIT_FAILURE


async def _run_list(config: AppConfig) -> int:
    targets = await YamlLocationRegistry(config.registry.path).get_all()
    if not targets:
        print_status("No locations registered.")
    for target in targets:
        print_status(f"{target.id}\t{target.name}\t{target.domain_name}")
    return EXIT_OK


async def _run_control(args: argparse.Namespace, config: AppConfig) -> int:
    target = await _lookup(config, args.id)
    if target is None:
        return EXIT_FAILURE

    deployer = RemoteDeployer.from_config(config.remote, status_callback=print_status)
    if args.command == "start":
        ok = await deployer.start(target)
    elif args.command == "stop":
        ok = await deployer.stop(target)
    elif args.command == "restart":
        ok = await deployer.restart(target)
    elif args.command == "download":
        ok = await deployer.download_file(target, args.local, args.remote)
    else:
        ok = await deployer.upload_file(target, args.local, args.remote)
    return EXIT_OK if ok else EXIT_FAILURE


async def _run_status(args: argparse.Namespace, config: AppConfig) -> int:
    provisioner = VMProvisioner(config.cloud, status_callback=print_status)
    print_status(await provisioner.status(args.name))
    return EXIT_OK


async def run(args: argparse.Namespace, config: AppConfig) -> int:
    """Dispatch a parsed command."""
    runner = OperationRunner()
    try:
        if args.command == "update":
            return await _run_update(config, runner)
        if args.command == "create":
            return await _run_create(args, config, runner)
        if args.command == "list":
            return await _run_list(config)
        if args.command == "status":
            return await _run_status(args, config)
        return await _run_control(args, config)
    finally:
        await runner.cancel_all()


def main(argv: list[str] | None = None) -> int:
    """Entry point of the `pnr-ops` console script."""
    argv = sys.argv[1:] if argv is None else argv
    args = build_parser().parse_args(argv)

    try:
        config = load_config(cli_args=argv)
    except (FileNotFoundError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    setup_logging(config.logging)
    logger.debug("Running command", extra={"command": args.command})

    try:
        return asyncio.run(run(args, config))
    except OpsError as e:
        logger.error(e.message, extra={"error": e.to_dict()})
        print_status(f"Error: {e.message}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print_status("Interrupted.")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
