#!/usr/bin/env python3
"""pcibisect - Device-Passthrough Bisection CLI Tool.

Main command-line interface. The ``step`` command is the test script handed
to ``git bisect run``; the other commands drive and inspect the harness.
"""

import argparse
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import List, Optional

from pcibisect import __version__
from pcibisect.config import HarnessConfig, load_config
from pcibisect.config.loader import default_config_path, example_config_path
from pcibisect.core import BisectRunner, GuestOracle, StepDriver, Workspace, abort_on_signals
from pcibisect.core.bisect_runner import RUN_ID_ENV
from pcibisect.core.checker import SystemChecker
from pcibisect.core.classifier import EXIT_FATAL, abort_exit_code
from pcibisect.device import DeviceBinder, SysfsHost, resolve_group
from pcibisect.exceptions import (
    DatabaseError,
    FatalHarnessError,
    HarnessError,
    StepInterrupted,
)
from pcibisect.persistence import StateManager
from pcibisect.vm import QemuSessionManager


# Configure logging
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging based on verbosity level.

    Logs go to stderr so that stdout stays free for command output.

    Args:
        verbose: If True, enable DEBUG level logging
        log_file: Additional file receiving the same log records
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )


def create_binder(config: HarnessConfig, host: SysfsHost) -> DeviceBinder:
    """Create the device binder for the configured target."""
    return DeviceBinder(
        host,
        passthrough_driver=config.device.passthrough_driver,
        bind_timeout=config.bind_timeout,
        owner_uid=config.device.owner_uid,
        owner_gid=config.device.owner_gid,
    )


def create_workspace(config: HarnessConfig, config_path: str) -> Workspace:
    """Create the workspace guard.

    Harness state and the configuration file are excluded from the clean
    when they live inside the workspace.
    """
    root = Path(config.workspace).resolve()
    exclude = list(config.build.clean_exclude)
    for path in (config.state_dir, config.db_path, config.console_log_dir, config_path):
        try:
            relative = Path(path).resolve().relative_to(root)
        except ValueError:
            continue
        if not relative.parts:
            continue
        pattern = f"/{relative.as_posix()}"
        if pattern not in exclude:
            exclude.append(pattern)
            logger.debug(f"Preserving {pattern} across workspace cleans")

    return Workspace(str(root), clean_ignored=config.build.clean_ignored, clean_exclude=exclude)


def open_journal(config: HarnessConfig) -> Optional[StateManager]:
    """Open the diagnostic journal, or None if it is disabled or unavailable."""
    if not config.journal_enabled:
        return None
    try:
        return StateManager(config.db_path)
    except (DatabaseError, OSError) as exc:
        logger.warning(f"Journal unavailable, continuing without it: {exc}")
        return None


def _run_id_from_env() -> Optional[int]:
    value = os.environ.get(RUN_ID_ENV)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {RUN_ID_ENV}={value!r}")
        return None


def cmd_step(args: argparse.Namespace) -> int:
    """Run one bisection step.

    Args:
        args: Parsed command-line arguments

    Returns:
        0 good, 1 bad, 125 untestable, 128 + signal to abort the search
    """
    sessions: Optional[QemuSessionManager] = None
    journal: Optional[StateManager] = None
    try:
        config = load_config(args.config)
        host = SysfsHost(config.device.sysfs_root)
        group = resolve_group(host, config.device.address)
        binder = create_binder(config, host)
        sessions = QemuSessionManager(binder, shutdown_timeout=config.shutdown_timeout)
        journal = open_journal(config)

        driver = StepDriver(
            config,
            group,
            binder,
            sessions,
            create_workspace(config, args.config),
            GuestOracle.from_config(config.oracle),
            journal=journal,
            run_id=_run_id_from_env(),
        )
        with abort_on_signals():
            result = driver.run_step(revision=args.revision, skip_build=args.skip_build)

    except StepInterrupted as exc:
        logger.error(f"Step interrupted by signal {exc.signum}, aborting bisection")
        return abort_exit_code(exc.signum)
    except FatalHarnessError as exc:
        logger.error(f"Aborting bisection: {exc}")
        return EXIT_FATAL
    except Exception as exc:
        logger.error(f"Aborting bisection after unexpected error: {exc}", exc_info=True)
        return EXIT_FATAL
    finally:
        if sessions is not None:
            sessions.shutdown()
        if journal is not None:
            journal.close()

    return result.exit_code


def cmd_run(args: argparse.Namespace) -> int:
    """Run a complete bisection with git bisect run.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 if the first bad commit was found, 1 otherwise)
    """
    config = load_config(args.config)
    host = SysfsHost(config.device.sysfs_root)
    group = resolve_group(host, config.device.address)
    journal = open_journal(config)

    runner = BisectRunner(
        create_workspace(config, args.config),
        create_binder(config, host),
        group,
        config_path=str(Path(args.config).resolve()),
        journal=journal,
        verbose=args.verbose,
        log_file=str(Path(args.log_file).resolve()) if args.log_file else None,
    )
    try:
        first_bad = runner.run(args.good, args.bad, first_parent=args.first_parent)
    finally:
        if journal is not None:
            journal.close()

    if not first_bad:
        print("✗ Bisection did not identify a first bad commit")
        return 1

    print(f"\nFirst bad commit: {first_bad}")
    return 0


def cmd_group(args: argparse.Namespace) -> int:
    """Show the isolation group of the target and its driver owners.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    config = load_config(args.config)
    host = SysfsHost(config.device.sysfs_root)
    group = resolve_group(host, config.device.address)
    binder = create_binder(config, host)

    owners = {binding.address: binding.owner for binding in binder.status(group)}

    print(f"IOMMU group {group.group_id} (target {group.target})")
    for member in group.members:
        marker = "*" if member.address == group.target else " "
        if member.is_bridge:
            print(f" {marker} {member.address}  bridge    (never rebound)")
        else:
            print(f" {marker} {member.address}  endpoint  driver: {owners[member.address]}")

    attached = binder.is_attached(group)
    print(f"\nAttached to {binder.passthrough_driver}: {'yes' if attached else 'no'}")
    print(f"Passthrough handle: {host.group_handle(group.group_id)}")
    return 0


def cmd_attach(args: argparse.Namespace) -> int:
    """Bind the whole isolation group to the passthrough driver."""
    config = load_config(args.config)
    host = SysfsHost(config.device.sysfs_root)
    group = resolve_group(host, config.device.address)

    create_binder(config, host).attach(group)
    print(f"✓ {group} attached to {config.device.passthrough_driver}")
    return 0


def cmd_detach(args: argparse.Namespace) -> int:
    """Return the isolation group to its host drivers."""
    config = load_config(args.config)
    host = SysfsHost(config.device.sysfs_root)
    group = resolve_group(host, config.device.address)

    create_binder(config, host).detach(group)
    print(f"✓ {group} returned to the host")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Check system dependencies and configuration.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 if all checks passed, 1 if any check failed)
    """
    logger.info("Running system health checks...")
    config = load_config(args.config)

    checker = SystemChecker(config)
    all_passed = checker.run_all_checks()
    checker.print_results()

    return 0 if all_passed else 1


def cmd_report(args: argparse.Namespace) -> int:
    """Generate a bisection report from the journal.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = load_config(args.config)
    state = StateManager(config.db_path)
    try:
        if args.run_id:
            run = state.get_run(args.run_id)
        else:
            run = state.get_latest_run()

        if not run:
            print("No bisection run found")
            return 1

        report = state.export_report(run.run_id, args.format)
    finally:
        state.close()

    if args.output:
        Path(args.output).write_text(report + "\n")
        print(f"✓ Report written to {args.output}")
    else:
        print(report)
    return 0


def _handle_logs_list(state: StateManager, args: argparse.Namespace) -> int:
    logs = state.list_step_logs(args.run_id)
    if not logs:
        print("No logs found")
        return 0

    print(f"{'ID':>5}  {'Run':>4}  {'Step':>4}  {'Revision':8}  {'Type':8}  {'Exit':>4}  {'Size':>8}")
    print("-" * 56)
    for log in logs:
        exit_code = "-" if log["exit_code"] is None else str(log["exit_code"])
        print(
            f"{log['log_id']:>5}  {log['run_id']:>4}  {log['step_num']:>4}  "
            f"{log['revision'][:8]:8}  {log['log_type']:8}  {exit_code:>4}  "
            f"{log['size_bytes'] or 0:>8}"
        )
    return 0


def _handle_logs_show(state: StateManager, args: argparse.Namespace) -> int:
    log = state.get_step_log(args.log_id)
    if not log:
        print(f"Log {args.log_id} not found")
        return 1

    print(f"=== {log['log_type']} log {log['log_id']} (step {log['step_num']}, {log['revision']}) ===")
    print(log["content"])
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    """Inspect build and console logs stored in the journal.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = load_config(args.config)
    state = StateManager(config.db_path)
    try:
        if args.logs_command == "list":
            return _handle_logs_list(state, args)
        if args.logs_command == "show":
            return _handle_logs_show(state, args)
    finally:
        state.close()

    print("Usage: pcibisect logs {list,show}")
    return 1


def cmd_init_config(args: argparse.Namespace) -> int:
    """Generate example configuration file.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    source_file = example_config_path()
    if not source_file.exists():
        print(f"Error: Example config file not found at {source_file}")
        print("This might indicate a corrupted installation.")
        return 1

    output_file = Path(args.output) if args.output else Path(default_config_path())

    if output_file.exists() and not args.force:
        response = input(f"File '{output_file}' already exists. Overwrite? [y/N]: ")
        if response.lower() not in ["y", "yes"]:
            print("Aborted.")
            return 1

    try:
        shutil.copy(source_file, output_file)
    except OSError as exc:
        print(f"Error copying config file: {exc}")
        return 1

    print(f"✓ Example configuration created: {output_file}")
    print("\nNext steps:")
    print(f"  1. Edit {output_file} with your device, images and build command")
    print("  2. Run: pcibisect check")
    print("  3. Run: pcibisect run <good-commit> <bad-commit>")
    return 0


def cmd_oracle_script(args: argparse.Namespace) -> int:
    """Render the guest oracle entrypoint script.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = load_config(args.config)
    oracle = GuestOracle.from_config(config.oracle)
    try:
        script = oracle.render_entrypoint()
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    if not args.output:
        print(script, end="")
        return 0

    output_file = Path(args.output)
    output_file.write_text(script)
    output_file.chmod(0o755)
    print(f"✓ Oracle entrypoint written to {output_file}")
    print(f"  Install it in the guest image as {oracle.entrypoint}")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="pcibisect",
        description="Bisect regressions on a physical PCI device through VM passthrough",
    )
    parser.add_argument(
        "--config",
        "-c",
        default=default_config_path(),
        help="Config file (default: $PCIBISECT_CONFIG or pcibisect.yaml)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--log-file", help="Also write log messages to this file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Step command
    parser_step = subparsers.add_parser(
        "step", help="Test the current revision (use with git bisect run)"
    )
    parser_step.add_argument(
        "--skip-build", action="store_true", help="Boot the existing images without building"
    )
    parser_step.add_argument("--revision", help="Label for the revision (default: commit id)")

    # Run command
    parser_run = subparsers.add_parser("run", help="Run a complete bisection")
    parser_run.add_argument("good", help="Known good revision (OLDER, working version)")
    parser_run.add_argument("bad", help="Known bad revision (NEWER, broken version)")
    parser_run.add_argument(
        "--first-parent", action="store_true", help="Follow only first parents of merges"
    )

    # Device commands
    subparsers.add_parser("group", help="Show the isolation group and driver owners")
    subparsers.add_parser("attach", help="Bind the isolation group to the passthrough driver")
    subparsers.add_parser("detach", help="Return the isolation group to the host drivers")

    # Check command
    subparsers.add_parser("check", help="Check system dependencies and configuration")

    # Report command
    parser_report = subparsers.add_parser("report", help="Generate bisection report")
    parser_report.add_argument("--run-id", type=int, help="Run ID (default: latest)")
    parser_report.add_argument(
        "--format", choices=["text", "json"], default="text", help="Report format"
    )
    parser_report.add_argument("--output", "-o", help="Output file (default: stdout)")

    # Logs command
    parser_logs = subparsers.add_parser("logs", help="Inspect build and console logs")
    logs_subparsers = parser_logs.add_subparsers(dest="logs_command", help="Logs command")

    parser_logs_list = logs_subparsers.add_parser("list", help="List stored logs")
    parser_logs_list.add_argument("--run-id", type=int, help="Filter by run ID")

    parser_logs_show = logs_subparsers.add_parser("show", help="Show a stored log")
    parser_logs_show.add_argument("log_id", type=int, help="Log ID to display")

    # Init-config command
    parser_init_config = subparsers.add_parser(
        "init-config", help="Generate example configuration file"
    )
    parser_init_config.add_argument("--output", "-o", help="Output file (default: pcibisect.yaml)")
    parser_init_config.add_argument(
        "--force", "-f", action="store_true", help="Overwrite existing file"
    )

    # Oracle-script command
    parser_oracle = subparsers.add_parser(
        "oracle-script", help="Render the guest oracle entrypoint script"
    )
    parser_oracle.add_argument("--output", "-o", help="Output file (default: stdout)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments (default: sys.argv)

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_file)

    # Route to command handlers
    handlers = {
        "step": cmd_step,
        "run": cmd_run,
        "group": cmd_group,
        "attach": cmd_attach,
        "detach": cmd_detach,
        "check": cmd_check,
        "report": cmd_report,
        "logs": cmd_logs,
        "init-config": cmd_init_config,
        "oracle-script": cmd_oracle_script,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 130
    except HarnessError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:
        logger.error(f"Fatal error: {exc}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
