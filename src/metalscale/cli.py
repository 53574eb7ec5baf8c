#!/usr/bin/env python3
"""metalscale - Bare-metal fleet power controller CLI.

Main command-line interface for serving the fleet provider and managing
machine records.
"""

import argparse
import logging
import shutil
import sys
from pathlib import Path

from metalscale.config import ConfigError, ControllerConfig, load_config, load_machines
from metalscale.config.config import DEFAULT_CONFIG_PATH, MachineConfig
from metalscale.core import ReconcileError, Reconciler, ReconcileScheduler
from metalscale.persistence import (
    ControlType,
    IPMIControl,
    MachineRecord,
    MachineSpec,
    MachineStatus,
    PowerState,
    RecordStore,
    StoreError,
    WOLControl,
)
from metalscale.power import create_power_backends
from metalscale.provider import FleetProvider, create_app, create_server


# Configure logging
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level.

    Args:
        verbose: If True, enable DEBUG level logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")


def build_config(args: argparse.Namespace) -> ControllerConfig:
    """Load the config file and apply command-line overrides.

    Args:
        args: Parsed command-line arguments

    Returns:
        Validated ControllerConfig
    """
    config = load_config(args.config)

    if getattr(args, "db", None):
        config.db_path = args.db
    if getattr(args, "address", None):
        config.server.address = args.address
    if getattr(args, "tls_cert", None):
        config.server.tls.cert_file = args.tls_cert
    if getattr(args, "tls_key", None):
        config.server.tls.key_file = args.tls_key
    if getattr(args, "tls_ca", None):
        config.server.tls.ca_file = args.tls_ca
    if getattr(args, "requeue_interval", None):
        config.reconcile.requeue_interval = args.requeue_interval
    if getattr(args, "failure_threshold", None):
        config.reconcile.failure_threshold = args.failure_threshold

    config.validate()
    return config


def machine_record(machine: MachineConfig) -> MachineRecord:
    """Build a record carrying the spec and labels of an inventory entry."""
    control_type = ControlType(machine.control_type)
    spec = MachineSpec(power_state=PowerState(machine.power_state), control_type=control_type)

    if control_type is ControlType.WOL:
        spec.wol = WOLControl(
            address=machine.address,
            mac_address=machine.mac_address,
            port=machine.port,
            broadcast_address=machine.broadcast_address,
            user=machine.ssh_user,
        )
    else:
        spec.ipmi = IPMIControl(
            address=machine.address,
            username=machine.ipmi_user,
            password=machine.ipmi_password,
        )

    return MachineRecord(name=machine.name, spec=spec, labels=dict(machine.labels))


def _pickup_note(config: ControllerConfig) -> str:
    return (
        "  A running controller picks this up at its next resync "
        f"(within {config.reconcile.resync_interval}s)"
    )


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the reconciler and the fleet provider server until signalled.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = build_config(args)
    store = RecordStore(config.db_path)

    reconciler = Reconciler(
        store,
        create_power_backends(config.power),
        failure_threshold=config.reconcile.failure_threshold,
        requeue_interval=config.reconcile.requeue_interval,
    )
    scheduler = ReconcileScheduler(
        reconciler,
        store,
        workers=config.reconcile.workers,
        resync_interval=config.reconcile.resync_interval,
    )
    server = create_server(create_app(FleetProvider(store)), config.server)

    scheme = "https" if config.server.tls.enabled else "http"
    logger.info(f"Serving fleet provider on {scheme}://{config.server.address}")

    scheduler.start()
    try:
        server.run()
    finally:
        scheduler.stop()
        store.close()

    return 0


def cmd_apply(args: argparse.Namespace) -> int:
    """Create or update machine records from an inventory file.

    Existing records keep their status; only spec and labels are replaced.
    """
    config = build_config(args)
    machines = load_machines(args.file)
    store = RecordStore(config.db_path)

    try:
        for machine in machines:
            record = machine_record(machine)
            existing = store.get(machine.name)
            if existing is None:
                store.create(record)
                print(f"✓ Created {machine.name}")
            else:
                store.update_spec(
                    MachineRecord(
                        name=existing.name,
                        spec=record.spec,
                        status=existing.status,
                        labels=record.labels,
                        version=existing.version,
                    )
                )
                print(f"✓ Updated {machine.name}")
    finally:
        store.close()

    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """Print every machine with its desired state and status."""
    config = build_config(args)
    store = RecordStore(config.db_path)

    try:
        records = store.list()
    finally:
        store.close()

    if not records:
        print("No machines registered")
        return 0

    print(f"{'NAME':20s} {'TYPE':5s} {'DESIRED':8s} {'PHASE':9s} {'FAILS':5s} MESSAGE")
    for record in records:
        desired = record.spec.power_state.value if record.spec.power_state else "-"
        phase = record.status.phase.value if record.status.phase else "-"
        print(
            f"{record.name:20s} {record.spec.control_type.value:5s} {desired:8s} "
            f"{phase:9s} {record.status.failure_count:5d} {record.status.message}"
        )
    return 0


def cmd_set_power(args: argparse.Namespace) -> int:
    """Set the desired power state of one machine."""
    config = build_config(args)
    store = RecordStore(config.db_path)

    try:
        record = store.get(args.name)
        if record is None:
            print(f"✗ Machine {args.name} not found")
            return 1
        record.spec.power_state = PowerState(args.state)
        store.update_spec(record)
        print(f"✓ {args.name} desired power state: {args.state}")
        print(_pickup_note(config))
    finally:
        store.close()

    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    """Clear the failed state and failure streak of one machine."""
    config = build_config(args)
    store = RecordStore(config.db_path)

    try:
        record = store.get(args.name)
        if record is None:
            print(f"✗ Machine {args.name} not found")
            return 1
        record.status = MachineStatus()
        store.update_status(record)
        print(f"✓ {args.name} reset")
        print(_pickup_note(config))
    finally:
        store.close()

    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Reconcile one machine in the foreground."""
    config = build_config(args)
    store = RecordStore(config.db_path)
    reconciler = Reconciler(
        store,
        create_power_backends(config.power),
        failure_threshold=config.reconcile.failure_threshold,
        requeue_interval=config.reconcile.requeue_interval,
    )

    try:
        requeue_after = reconciler.reconcile(args.name)
    except ReconcileError as exc:
        print(f"✗ {exc}")
        return 1
    finally:
        store.close()

    if requeue_after is None:
        print(f"✓ {args.name} reconciled")
    else:
        print(f"✓ {args.name} reconciled, check again in {requeue_after:.0f}s")
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    """Remove one machine record."""
    config = build_config(args)
    store = RecordStore(config.db_path)

    try:
        store.delete(args.name)
        print(f"✓ Deleted {args.name}")
    finally:
        store.close()

    return 0


def cmd_init_config(args: argparse.Namespace) -> int:
    """Generate example configuration file.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    source_file = Path(__file__).parent / "config" / "metalscale.yaml.example"

    if not source_file.exists():
        print(f"Error: Example config file not found at {source_file}")
        print("This might indicate a corrupted installation.")
        return 1

    output_file = Path(args.output) if args.output else Path(DEFAULT_CONFIG_PATH)

    if output_file.exists() and not args.force:
        print(f"✗ {output_file} already exists (use --force to overwrite)")
        return 1

    shutil.copy(source_file, output_file)
    print(f"✓ Example configuration created: {output_file}")
    print("\nNext steps:")
    print(f"  1. Edit {output_file} with your server and power settings")
    print("  2. Run: metalscale apply -f machines.yaml")
    print("  3. Run: metalscale serve")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        description="Bare-metal fleet power controller",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "-c", "--config", default=DEFAULT_CONFIG_PATH, help="Configuration file path"
    )
    parser.add_argument("--db", help="Record database path (overrides config)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve command
    parser_serve = subparsers.add_parser("serve", help="Run reconciler and provider server")
    parser_serve.add_argument("--address", help="Listen address host:port")
    parser_serve.add_argument("--tls-cert", help="TLS certificate file")
    parser_serve.add_argument("--tls-key", help="TLS key file")
    parser_serve.add_argument("--tls-ca", help="CA file for client certificate verification")
    parser_serve.add_argument(
        "--requeue-interval", type=int, help="Seconds between checks of pending transitions"
    )
    parser_serve.add_argument(
        "--failure-threshold", type=int, help="Consecutive failures before a machine fails"
    )

    # apply command
    parser_apply = subparsers.add_parser("apply", help="Create or update machines from inventory")
    parser_apply.add_argument("-f", "--file", required=True, help="Inventory YAML file")

    # list command
    subparsers.add_parser("list", help="List machines")

    # set-power command
    parser_set_power = subparsers.add_parser("set-power", help="Set desired power state")
    parser_set_power.add_argument("name", help="Machine name")
    parser_set_power.add_argument("state", choices=["on", "off"], help="Desired power state")

    # reset command
    parser_reset = subparsers.add_parser("reset", help="Clear a failed machine")
    parser_reset.add_argument("name", help="Machine name")

    # reconcile command
    parser_reconcile = subparsers.add_parser("reconcile", help="Reconcile one machine now")
    parser_reconcile.add_argument("name", help="Machine name")
    parser_reconcile.add_argument(
        "--failure-threshold", type=int, help="Consecutive failures before a machine fails"
    )

    # delete command
    parser_delete = subparsers.add_parser("delete", help="Delete a machine record")
    parser_delete.add_argument("name", help="Machine name")

    # init-config command
    parser_init_config = subparsers.add_parser(
        "init-config", help="Generate example configuration file"
    )
    parser_init_config.add_argument(
        "--output", "-o", help="Output file path (default: metalscale.yaml)"
    )
    parser_init_config.add_argument(
        "--force", "-f", action="store_true", help="Overwrite existing file"
    )

    return parser


def main() -> int:
    """Main entry point.

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(args.verbose)

    # Route to command handlers
    try:
        if args.command == "serve":
            return cmd_serve(args)
        if args.command == "apply":
            return cmd_apply(args)
        if args.command == "list":
            return cmd_list(args)
        if args.command == "set-power":
            return cmd_set_power(args)
        if args.command == "reset":
            return cmd_reset(args)
        if args.command == "reconcile":
            return cmd_reconcile(args)
        if args.command == "delete":
            return cmd_delete(args)
        if args.command == "init-config":
            return cmd_init_config(args)

        parser.print_help()
        return 1

    except (ConfigError, StoreError) as exc:
        logger.error(str(exc))
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 130
    except Exception as exc:
        logger.error(f"Fatal error: {exc}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
