# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
periscope command line.

    periscope [connect]     Replace the tunnel job and open the editor (default)
    periscope init          Create or overwrite the config file
    periscope cancel        Sweep and cancel the tunnel job without resubmitting
"""

import argparse
import functools
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from periscope.cli import interactive
from periscope.core.config import default_config_path, load_config
from periscope.core.editor import check_editor_available, launch_editor
from periscope.core.errors import ConfigurationError, PeriscopeError
from periscope.core.job_spec import build_job_spec
from periscope.core.lifecycle import LifecycleManager
from periscope.core.preflight import run_preflight
from periscope.core.remote import SSHRunner
from periscope.core.schema import PeriscopeConfig
from periscope.core.slurm import SlurmSchedulerClient
from periscope.core.ssh_config import (
    BlockStatus,
    apply_block,
    check_ssh_config,
    default_ssh_config_path,
    render_block_for,
)
from periscope.core.sweeper import ProcessSweeper
from periscope.logging_utils import setup_logging

logger = logging.getLogger(__name__)

console = Console()


# ============================================================================
# Wiring
# ============================================================================


def build_login_runner(config: PeriscopeConfig) -> SSHRunner:
    """Runner for the login node, authenticated with the local key."""
    cluster = config.cluster
    return SSHRunner(
        cluster.login_node,
        user=cluster.user,
        identity_file=cluster.local_ssh_key_path,
        connect_timeout=cluster.connect_timeout,
        timeout=cluster.command_timeout,
    )


def build_sweeper(config: PeriscopeConfig, login: SSHRunner) -> ProcessSweeper:
    """Sweeper that reaches compute nodes by hopping through the login node."""
    cluster = config.cluster

    def node_runner(node: str) -> SSHRunner:
        # Compute node host keys are not in the login node's known_hosts
        return SSHRunner(
            node,
            identity_file=cluster.cluster_ssh_key,
            connect_timeout=cluster.connect_timeout,
            strict_host_key_checking=False,
            via=login,
            timeout=cluster.command_timeout,
        )

    return ProcessSweeper(
        node_runner=node_runner,
        home_runner=login,
        state_dir=config.endpoint.session_state_dir,
        attempts=config.lifecycle.sweep_attempts,
    )


def build_manager(config: PeriscopeConfig, login: SSHRunner) -> LifecycleManager:
    lifecycle = config.lifecycle
    endpoint = config.endpoint
    return LifecycleManager(
        scheduler=SlurmSchedulerClient(login, owner=config.cluster.user, timeout=config.cluster.command_timeout),
        sweeper=build_sweeper(config, login),
        job_spec_factory=functools.partial(
            build_job_spec,
            python=endpoint.python,
            sshd_path=endpoint.sshd_path,
            state_dir=endpoint.session_state_dir,
            shutdown_grace=lifecycle.shutdown_grace,
            signal_margin=lifecycle.signal_margin,
        ),
        poll_interval=lifecycle.poll_interval,
        start_timeout=lifecycle.start_timeout,
        cancel_settle_timeout=lifecycle.cancel_settle_timeout,
    )


def sync_ssh_config(config: PeriscopeConfig, path: Path) -> None:
    """Make sure the managed host block is present and current."""
    block = render_block_for(config)
    status = check_ssh_config(path, block, config.session.host_alias)
    if status == BlockStatus.UP_TO_DATE:
        logger.info("SSH config is already up-to-date")
        return

    if status == BlockStatus.MISSING:
        console.print("The periscope SSH config block is missing and needs to be added.")
    else:
        console.print("Your existing periscope SSH config block is outdated and needs to be replaced.")
    interactive.display_ssh_block(block, title=str(path))

    if not interactive.confirm("Apply this change?"):
        raise ConfigurationError(f"SSH config not updated. Update {path} manually and run again.")
    apply_block(path, block)


def resolve_config(args: argparse.Namespace) -> PeriscopeConfig:
    """Load the config, running the setup wizard on first use."""
    path = Path(args.config).expanduser() if args.config else default_config_path()
    if not path.exists():
        console.print(f"[yellow]No configuration found at {path}.[/] Starting setup.")
        if interactive.run_init(path) != 0:
            raise ConfigurationError("Setup did not complete")
    return load_config(path)


# ============================================================================
# Commands
# ============================================================================


def cmd_connect(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    session = config.to_session()
    login = build_login_runner(config)

    if not args.skip_checks:
        run_preflight(login, session, confirm=interactive.confirm)
        sync_ssh_config(config, Path(args.ssh_config).expanduser())
    if not args.no_editor:
        check_editor_available()

    manager = build_manager(config, login)
    endpoint = manager.establish(session, timeout=args.timeout)

    console.print(
        Panel(
            f"Job [bold]{endpoint.job_id}[/] running on [green]{endpoint}[/]\n"
            f"SSH alias: [cyan]{endpoint.host_alias}[/]\n"
            f"Log: [dim]{session.realized_log_path(endpoint.job_id)}[/]",
            title="Tunnel ready",
            border_style="green",
        )
    )

    if not args.no_editor:
        launch_editor(config.session.host_alias, config.cluster.remote_workspace_path)
        console.print("[bold green]Editor connection initiated. This terminal can now be closed.[/]")
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    path = Path(args.config).expanduser() if args.config else default_config_path()
    return interactive.run_init(path)


def cmd_cancel(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    session = config.to_session()
    manager = build_manager(config, build_login_runner(config))

    cancelled = manager.preempt(session)
    if cancelled:
        console.print(f"[green]Cancelled job(s): {', '.join(cancelled)}[/]")
    else:
        console.print(f"[dim]No {session.name!r} jobs to cancel.[/]")
    return 0


# ============================================================================
# Entry point
# ============================================================================


def _add_connect_options(p: argparse.ArgumentParser, suppress_defaults: bool = False) -> None:
    def default(value):
        return argparse.SUPPRESS if suppress_defaults else value

    p.add_argument("--skip-checks", action="store_true", default=default(False), help="Skip pre-flight and SSH config checks")
    p.add_argument("--no-editor", action="store_true", default=default(False), help="Do not launch the editor")
    p.add_argument("--timeout", type=float, default=default(None), help="Seconds to wait for the job to start")
    p.add_argument("--ssh-config", type=str, default=default(str(default_ssh_config_path())), help="Local SSH config file")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="periscope", description="Run an editor tunnel on a Slurm compute node")
    parser.add_argument("--config", type=str, default=None, help="Config file (default: ~/.config/periscope/config.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    # SUPPRESS keeps subcommand defaults from overwriting options given before the subcommand
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=str, default=argparse.SUPPRESS, help=argparse.SUPPRESS)
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help=argparse.SUPPRESS)

    subparsers = parser.add_subparsers(dest="command")

    connect = subparsers.add_parser("connect", parents=[common], help="Start (or replace) the tunnel and open the editor")
    init = subparsers.add_parser("init", parents=[common], help="Create the config file interactively")
    cancel = subparsers.add_parser("cancel", parents=[common], help="Cancel the tunnel job")

    _add_connect_options(parser)
    _add_connect_options(connect, suppress_defaults=True)

    connect.set_defaults(func=cmd_connect)
    init.set_defaults(func=cmd_init)
    cancel.set_defaults(func=cmd_cancel)
    parser.set_defaults(func=cmd_connect)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else logging.INFO, rich=True)

    try:
        exit_code = args.func(args)
    except PeriscopeError as e:
        console.print(f"[bold red]Error:[/] {escape(str(e))}")
        exit_code = 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/]")
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
