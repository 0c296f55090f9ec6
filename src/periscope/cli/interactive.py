# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Interactive setup for periscope using Rich and Questionary.

This provides:
- A first-run wizard that asks for the cluster, session and resource values
- A rich summary of the resulting configuration
- Confirmation prompts used by the connect flow (authorized_keys, SSH config)

Usage:
    periscope init                  # Run the wizard
    periscope                       # Runs the wizard first if no config exists
"""

import random
from pathlib import Path
from typing import Any

import questionary
from questionary import Style
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.tree import Tree

from periscope.core.config import config_from_dict, write_config
from periscope.core.errors import ConfigurationError
from periscope.core.schema import DEFAULT_HOST_ALIAS, DEFAULT_JOB_NAME

console = Console()

# Custom questionary style
STYLE = Style(
    [
        ("qmark", "fg:cyan bold"),
        ("question", "bold"),
        ("answer", "fg:green bold"),
        ("pointer", "fg:cyan bold"),
        ("highlighted", "fg:cyan bold"),
        ("selected", "fg:green"),
    ]
)

# Suggested tunnel port range
PORT_RANGE = (2000, 8000)


def _required(value: str) -> bool | str:
    return True if value.strip() else "A value is required"


def _valid_port(value: str) -> bool | str:
    try:
        port = int(value)
    except ValueError:
        return "Enter a number"
    return True if 1024 <= port <= 65535 else "Port must be between 1024 and 65535"


def display_config_summary(config: dict[str, Any], title: str = "Configuration") -> None:
    """Display a rich summary of a config dict."""
    tree = Tree(f"[bold cyan]{title}[/]")

    if "cluster" in config:
        branch = tree.add("[bold]Cluster[/]")
        c = config["cluster"]
        branch.add(f"login: [green]{c.get('user', 'N/A')}@{c.get('login_node', 'N/A')}[/]")
        branch.add(f"local key: [dim]{c.get('local_ssh_key', 'N/A')}[/]")
        branch.add(f"cluster key: [dim]{c.get('cluster_ssh_key', 'N/A')}[/]")
        branch.add(f"workspace: [yellow]{c.get('remote_workspace_path', 'N/A')}[/]")

    if "session" in config:
        branch = tree.add("[bold]Session[/]")
        s = config["session"]
        branch.add(f"job name: [cyan]{s.get('name', DEFAULT_JOB_NAME)}[/]")
        branch.add(f"port: [green]{s.get('port', 'N/A')}[/]")
        branch.add(f"ssh alias: [cyan]{s.get('host_alias', DEFAULT_HOST_ALIAS)}[/]")

    if "resources" in config:
        branch = tree.add("[bold]Resources[/]")
        for key, value in config["resources"].items():
            branch.add(f"{key}: [yellow]{value}[/]")

    console.print(tree)


def display_ssh_block(block: str, title: str = "SSH config block") -> None:
    syntax = Syntax(block, "text", theme="monokai", line_numbers=False)
    console.print(Panel(syntax, title=title, border_style="cyan"))


def confirm(question: str, default: bool = False) -> bool:
    """Yes/no prompt; a cancelled prompt (Ctrl-C) counts as no."""
    return bool(questionary.confirm(question, default=default, style=STYLE).ask())


def ask_config_values() -> dict[str, Any] | None:
    """Ask for every required value. Returns None if the user aborts."""
    answers = questionary.form(
        user=questionary.text("Cluster username:", validate=_required, style=STYLE),
        login_node=questionary.text("Login node address:", validate=_required, style=STYLE),
        local_ssh_key=questionary.path("Local private SSH key:", default="~/.ssh/id_rsa", style=STYLE),
        cluster_ssh_key=questionary.text(
            "Cluster-side SSH key (absolute path on the cluster):", validate=_required, style=STYLE
        ),
        remote_workspace_path=questionary.text(
            "Remote workspace path (where the editor opens):", validate=_required, style=STYLE
        ),
        partition=questionary.text("Slurm partition:", validate=_required, style=STYLE),
        port=questionary.text(
            "Tunnel port (must be unused):",
            default=str(random.randint(*PORT_RANGE)),
            validate=_valid_port,
            style=STYLE,
        ),
        time_limit=questionary.text("Job time limit:", default="10:00:00", style=STYLE),
    ).ask()

    if not answers:
        return None

    return {
        "cluster": {
            "user": answers["user"].strip(),
            "login_node": answers["login_node"].strip(),
            "local_ssh_key": answers["local_ssh_key"].strip(),
            "cluster_ssh_key": answers["cluster_ssh_key"].strip(),
            "remote_workspace_path": answers["remote_workspace_path"].strip(),
        },
        "session": {
            "name": DEFAULT_JOB_NAME,
            "port": int(answers["port"]),
            "host_alias": DEFAULT_HOST_ALIAS,
        },
        "resources": {
            "partition": answers["partition"].strip(),
            "time_limit": answers["time_limit"].strip(),
        },
    }


def run_init(config_path: Path) -> int:
    """Wizard entry point. Writes ``config_path`` and returns an exit code."""
    console.print()
    console.print(Panel.fit("[bold cyan]periscope[/] [dim]Setup[/]", border_style="cyan"))
    console.print()

    if config_path.exists() and not confirm(f"{config_path} already exists. Overwrite it?"):
        console.print("[yellow]Keeping the existing configuration.[/]")
        return 0

    config = ask_config_values()
    if config is None:
        console.print("[yellow]Setup cancelled.[/]")
        return 1

    console.print()
    display_config_summary(config, title=str(config_path))
    console.print()

    try:
        config_from_dict(config)
    except ConfigurationError as e:
        console.print(f"[bold red]{e}[/]")
        return 1

    if not confirm("Save this configuration?", default=True):
        console.print("[yellow]Nothing saved.[/]")
        return 1

    write_config(config_path, config)
    console.print(f"[bold green]Configuration saved to {config_path}[/]")
    console.print("[dim]Advanced settings (lifecycle, endpoint) can be edited in the file.[/]")
    return 0
