"""Shared utilities for the CLI command modules."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .. import ROLEPASS_HOME
from ..config import ConfigError, Settings, load_settings

console = Console()

home_option = click.option(
    "--home",
    default=ROLEPASS_HOME,
    type=click.Path(),
    help="RolePass home directory.",
)


def load_or_exit(home: str) -> Settings:
    """Load settings or print the error and exit 1."""
    home_path = Path(home).expanduser()
    if not home_path.exists():
        console.print("[bold red]No RolePass home found.[/] Run rolepass init first.")
        sys.exit(1)
    try:
        return load_settings(home_path)
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/] {exc}")
        sys.exit(1)


def short_hash(value: Optional[str], width: int = 16) -> str:
    return value[:width] if value else "[dim]-[/]"
