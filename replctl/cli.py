#!/usr/bin/env python3
"""
Command-line interface for replctl.

Runs the primary/replica runbook: provisioning, verification, restart
recovery, refresh from a dump, database add/remove and rollback.

Exit codes:
    0  success
    1  operation failed (also: another operation in progress, recovery timeout)
    2  invalid arguments or configuration
    3  timed out waiting for replication to verify
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import NodeType, create_default_config
from .errors import (
    ConfigError, InvalidArgument, ReplctlError, StepFailed, VerificationTimeout,
)
from .lifecycle import RecoveryResult
from .models import Operation, OperationState, TopologyState
from .operations import OperationResult
from .runbook import Runbook, load_runbook

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_TIMEOUT = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replctl",
        description="Primary/replica MySQL runbook automation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Write a default topology and its compose manifest
  replctl init
  replctl compose

  # Seed the replica from the primary and start replication
  replctl provision

  # Check replication after a restart
  replctl recover

  # Replace a database from a dump and re-seed the replica
  replctl refresh shop --dump shop.sql

  # Undo the last operation
  replctl rollback
"""
    )

    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to topology configuration (default: ./config/topology.json)"
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="Override the configured state directory"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log every command run against the nodes"
    )

    # every subcommand can print JSON
    output = argparse.ArgumentParser(add_help=False)
    output.add_argument("--json", action="store_true", help="Output in JSON format")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Init command
    init_parser = subparsers.add_parser("init", parents=[output], help="Create a topology configuration")
    init_parser.add_argument(
        "--base-dir", "-d",
        type=Path,
        default=Path.cwd(),
        help="Base directory for config, state and compose file"
    )
    init_parser.add_argument("--root-password", default="root", help="MySQL root password (default: root)")
    init_parser.add_argument("--replication-password", default="repl", help="Replication user password")
    init_parser.add_argument(
        "--node-type",
        choices=[t.value for t in NodeType],
        default=NodeType.DOCKER_CONTAINER.value,
        help="How commands reach the nodes (default: docker_container)"
    )
    init_parser.add_argument("--primary-port", type=int, default=3306, help="Host port of the primary")
    init_parser.add_argument("--replica-port", type=int, default=3307, help="Host port of the replica")
    init_parser.add_argument("--mysql-version", default=None, help="MySQL server version (default: 8.0.36)")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing configuration")

    compose_parser = subparsers.add_parser("compose", parents=[output], help="Write the docker-compose manifest")
    compose_parser.add_argument("--output", "-o", type=Path, default=None, help="Output path")

    subparsers.add_parser("provision", parents=[output], help="Provision the replica from the primary")
    subparsers.add_parser("verify", parents=[output], help="Re-run verification of the last provision")
    subparsers.add_parser("recover", parents=[output], help="Wait for replication to resume after a restart")

    rollback_parser = subparsers.add_parser("rollback", parents=[output], help="Roll back an operation")
    rollback_parser.add_argument("operation", nargs="?", default=None, help="Operation id (default: latest)")

    subparsers.add_parser("status", parents=[output], help="Show topology status")

    refresh_parser = subparsers.add_parser("refresh", parents=[output], help="Refresh a database from a dump")
    refresh_parser.add_argument("database", help="Database to replace")
    refresh_parser.add_argument("--dump", type=Path, required=True, help="Dump file to import")

    add_parser = subparsers.add_parser("add-database", parents=[output], help="Create a database on the primary")
    add_parser.add_argument("name", help="Database name")

    remove_parser = subparsers.add_parser("remove-database", parents=[output], help="Drop a database on the primary")
    remove_parser.add_argument("name", help="Database name")

    subparsers.add_parser("cancel", parents=[output], help="Cancel the running operation")
    subparsers.add_parser("operations", parents=[output], help="List recorded operations")

    snapshots_parser = subparsers.add_parser("snapshots", parents=[output], help="Manage snapshots")
    snapshots_sub = snapshots_parser.add_subparsers(dest="snapshots_command")
    snapshots_sub.add_parser("list", parents=[output], help="List snapshots")
    purge_parser = snapshots_sub.add_parser("purge", parents=[output], help="Delete a snapshot")
    purge_parser.add_argument("snapshot_id", help="Snapshot id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if not args.command:
        parser.print_help()
        return EXIT_INVALID

    try:
        return run_command(args)
    except StepFailed as e:
        _print_error(args, e, step=e.step, last_completed=e.last_completed)
        return EXIT_TIMEOUT if e.is_timeout else EXIT_FAILED
    except VerificationTimeout as e:
        _print_error(args, e)
        return EXIT_TIMEOUT
    except (InvalidArgument, ConfigError) as e:
        _print_error(args, e)
        return EXIT_INVALID
    except ReplctlError as e:
        _print_error(args, e)
        return EXIT_FAILED


def run_command(args) -> int:
    """Run the specified command."""
    if args.command == "init":
        return cmd_init(args)

    runbook = load_runbook(args.config, state_dir=args.state_dir)

    if args.command == "compose":
        return cmd_compose(runbook, args)
    elif args.command == "status":
        return cmd_status(runbook, args.json)
    elif args.command == "provision":
        return _report(args, runbook.provision())
    elif args.command == "verify":
        return _report(args, runbook.verify())
    elif args.command == "recover":
        return cmd_recover(runbook, args.json)
    elif args.command == "rollback":
        return _report(args, runbook.rollback(args.operation))
    elif args.command == "refresh":
        return _report(args, runbook.refresh(args.database, args.dump))
    elif args.command == "add-database":
        return _report(args, runbook.add_database(args.name))
    elif args.command == "remove-database":
        return _report(args, runbook.remove_database(args.name))
    elif args.command == "cancel":
        return cmd_cancel(runbook, args.json)
    elif args.command == "operations":
        return cmd_operations(runbook, args.json)
    elif args.command == "snapshots":
        return cmd_snapshots(runbook, args)

    raise InvalidArgument(f"Unknown command: {args.command}")


def _emit(json_output: bool, payload: Dict[str, Any], lines: List[str], stream=None) -> None:
    stream = stream or sys.stdout
    if json_output:
        print(json.dumps(payload, indent=2, default=str), file=stream)
    else:
        for line in lines:
            print(line, file=stream)


def _print_error(args, error: Exception, step: Optional[str] = None, last_completed: Optional[str] = None) -> None:
    payload = {"success": False, "error": type(error).__name__, "message": str(error)}
    lines = [f"✗ {error}"]
    if step is not None:
        cause = error.cause
        payload.update({
            "step": step,
            "last_completed": last_completed,
            "cause": type(cause).__name__,
        })
        lines.append(f"  failed step:    {step}")
        lines.append(f"  last completed: {last_completed or '-'}")
        lines.append(f"  cause:          {type(cause).__name__}: {cause}")
    _emit(getattr(args, "json", False), payload, lines, stream=sys.stderr)


def _format_link(topology: TopologyState) -> str:
    link = topology.link
    if link is None:
        return "no replication link"
    text = f"{link.state.value} from {link.source_host}:{link.source_port}"
    if link.seconds_behind is not None:
        text += f", {link.seconds_behind}s behind"
    if link.last_error:
        text += f" ({link.last_error})"
    return text


def _operation_lines(operation: Operation) -> List[str]:
    lines = [f"{operation.kind} {operation.operation_id}: {operation.state.value}"]
    for record in operation.steps:
        line = f"  {record.name:<22} {record.status.value}"
        if record.error:
            line += f"  {record.error}"
        lines.append(line)
    return lines


def _report(args, result: OperationResult) -> int:
    operation = result.operation
    success = operation.state in (OperationState.COMPLETED, OperationState.ROLLED_BACK)
    mark = "✓" if success else "✗"
    lines = [f"{mark} " + _operation_lines(operation)[0]] + _operation_lines(operation)[1:]
    if operation.state == OperationState.CANCELLED:
        lines.append(f"  cancelled before {operation.error['step']}; run the command again to resume")
    lines.append(f"Replica link: {_format_link(result.after)}")
    _emit(args.json, {
        "success": success,
        "operation": operation.to_dict(),
        "before": result.before.to_dict(),
        "after": result.after.to_dict(),
    }, lines)
    return EXIT_OK if success else EXIT_FAILED


def cmd_init(args) -> int:
    """Create a new topology configuration."""
    config = create_default_config(
        base_dir=args.base_dir.resolve(),
        root_password=args.root_password,
        replication_password=args.replication_password,
        node_type=NodeType(args.node_type),
        primary_port=args.primary_port,
        replica_port=args.replica_port,
    )
    if args.mysql_version:
        config.mysql_version = args.mysql_version
    if args.state_dir is not None:
        config.state_dir = args.state_dir.resolve()

    path = args.config or config.config_dir / "topology.json"
    if path.exists() and not args.force:
        raise InvalidArgument(f"Configuration already exists at {path} (use --force to overwrite)")
    config.save(path)

    _emit(args.json, {"success": True, "config": str(path)}, [
        "✓ Topology configuration created",
        f"  Config file: {path}",
        f"  Primary: {config.primary.describe()}",
        f"  Replica: {config.replica.describe()}",
        "",
        "Next steps:",
        "  1. Write the compose manifest: replctl compose",
        "  2. Start the containers: docker compose up -d",
        "  3. Provision the replica: replctl provision",
    ])
    return EXIT_OK


def cmd_compose(runbook: Runbook, args) -> int:
    path = runbook.write_compose(args.output)
    _emit(args.json, {"success": True, "compose_file": str(path)}, [f"✓ Wrote {path}"])
    return EXIT_OK


def cmd_status(runbook: Runbook, json_output: bool) -> int:
    """Show topology status."""
    topology = runbook.status()
    lines = [f"Topology: {runbook.config.topology_name}", ""]
    for node in (topology.primary, topology.replica):
        reachable = "✓" if node.reachable else "✗"
        lines.append(f"{node.role.capitalize()} {node.name}:")
        lines.append(f"  Reachable: {reachable}  Read-only: {node.read_only}")
        if node.databases:
            lines.append(f"  Databases: {', '.join(node.databases)}")
        if node.degraded:
            lines.append(f"  Degraded: {node.error}")
        elif node.error:
            lines.append(f"  Error: {node.error}")
        lines.append("")
    lines.append(f"Replica link: {_format_link(topology)}")
    if topology.link is not None and topology.link.position:
        lines.append(f"  Position: {topology.link.position}")
    _emit(json_output, topology.to_dict(), lines)
    return EXIT_OK


def cmd_recover(runbook: Runbook, json_output: bool) -> int:
    result: RecoveryResult = runbook.recover()
    lines = [f"✓ Replication streaming after {result.attempts} attempt(s)"]
    if result.restarted_replication:
        lines.append("  Replication was stopped and has been started")
    lines.append(f"Replica link: {_format_link(result.topology)}")
    _emit(json_output, {
        "success": True,
        "attempts": result.attempts,
        "restarted_replication": result.restarted_replication,
        "link": result.link.to_dict(),
        "after": result.topology.to_dict(),
    }, lines)
    return EXIT_OK


def cmd_cancel(runbook: Runbook, json_output: bool) -> int:
    holder = runbook.cancel()
    if holder is None:
        _emit(json_output, {"success": False, "message": "no operation running"}, ["No operation running"])
        return EXIT_FAILED
    _emit(json_output, {"success": True, "holder": holder}, [
        f"✓ Cancellation requested for {holder.get('kind')} (pid {holder.get('pid')}); "
        "it stops before its next step"
    ])
    return EXIT_OK


def cmd_operations(runbook: Runbook, json_output: bool) -> int:
    operations = runbook.operations()
    lines = []
    for operation in operations:
        lines.extend(_operation_lines(operation))
        lines.append(f"  created {operation.created_at}")
    if not operations:
        lines.append("No operations recorded")
    _emit(json_output, {"operations": [op.to_dict() for op in operations]}, lines)
    return EXIT_OK


def cmd_snapshots(runbook: Runbook, args) -> int:
    if args.snapshots_command == "purge":
        runbook.purge_snapshot(args.snapshot_id)
        _emit(args.json, {"success": True, "purged": args.snapshot_id}, [f"✓ Purged {args.snapshot_id}"])
        return EXIT_OK

    snapshots = runbook.list_snapshots()
    lines = [
        f"{s.snapshot_id}  {', '.join(s.databases) or '(no databases)'}  "
        f"{'consumed by ' + s.consumed_by if s.consumed_by else 'unused'}  {s.path}"
        for s in snapshots
    ] or ["No snapshots"]
    _emit(args.json, {"snapshots": [s.to_dict() for s in snapshots]}, lines)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
