"""Name commands: manage the registered names of guild members."""

from __future__ import annotations

import json

import click
from rich.table import Table

from ._common import console, home_option, load_or_exit


def register_name_commands(main: click.Group) -> None:
    """Register the name command group."""

    @main.group()
    def name():
        """Registered member names.

        A running daemon notices edits on its next tick and republishes
        the guild if the member holds a privileged role.
        """

    @name.command("set")
    @click.argument("guild_id")
    @click.argument("member_id")
    @click.argument("display_name")
    @home_option
    def name_set(guild_id: str, member_id: str, display_name: str, home: str):
        """Register DISPLAY_NAME for MEMBER_ID in GUILD_ID."""
        from ..registry import Registry

        registry = Registry(load_or_exit(home).home)
        if registry.set_name(guild_id, member_id, display_name):
            console.print(f"[green]Registered[/] {member_id} as [bold]{display_name}[/]")
        else:
            console.print("[dim]Name unchanged.[/]")

    @name.command("remove")
    @click.argument("guild_id")
    @click.argument("member_id")
    @home_option
    def name_remove(guild_id: str, member_id: str, home: str):
        """Remove MEMBER_ID's registered name in GUILD_ID."""
        from ..registry import Registry

        registry = Registry(load_or_exit(home).home)
        if registry.remove_name(guild_id, member_id):
            console.print(f"[green]Removed[/] {member_id}")
        else:
            console.print(f"[yellow]{member_id} has no registered name.[/]")

    @name.command("list")
    @click.argument("guild_id")
    @home_option
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def name_list(guild_id: str, home: str, json_out: bool):
        """List registered names in GUILD_ID."""
        from ..registry import Registry

        names = Registry(load_or_exit(home).home).registered_members(guild_id)
        if json_out:
            click.echo(json.dumps(names, indent=2))
            return
        if not names:
            console.print("[dim]No registered names.[/]")
            return
        table = Table(title=f"Registered names in {guild_id}")
        table.add_column("Member", style="cyan")
        table.add_column("Name")
        for member_id, display_name in sorted(names.items()):
            table.add_row(member_id, display_name)
        console.print(table)
