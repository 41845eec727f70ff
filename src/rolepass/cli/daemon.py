"""Daemon commands: start, stop, status."""

from __future__ import annotations

import json
import os
import signal
import sys

import click
from rich.panel import Panel
from rich.table import Table

from ._common import console, home_option, load_or_exit


def register_daemon_commands(main: click.Group) -> None:
    """Register the daemon command group."""

    @main.group()
    def daemon():
        """Background publisher.

        Republishes stale guild artifacts every poll interval, uploads
        registry backups, and serves a local status API.
        """

    @daemon.command("start")
    @home_option
    def daemon_start(home: str):
        """Start the publisher in the foreground (Ctrl+C to stop)."""
        from ..daemon import DaemonService, is_running
        from ..signer import SigningKeyError

        settings = load_or_exit(home)
        if is_running(settings.home):
            console.print("[yellow]Daemon is already running.[/]")
            sys.exit(0)

        svc = DaemonService(settings)
        general = settings.general
        console.print(f"\n  [green]Starting daemon[/] on port [cyan]{settings.api_port}[/]")
        console.print(
            f"  Poll: {general.data_update_check_interval_sec}s"
            f" | Token TTL: {general.token_expire_period_sec}s"
        )
        console.print(f"  Log: {svc.log_file}")
        console.print(f"  PID: {os.getpid()}\n")

        try:
            svc.start()
        except SigningKeyError as exc:
            console.print(f"[bold red]Cannot load signing key:[/] {exc}")
            sys.exit(1)
        svc.run_forever()

    @daemon.command("stop")
    @home_option
    def daemon_stop(home: str):
        """Stop the running daemon."""
        from pathlib import Path

        from ..daemon import PID_FILE, read_pid

        home_path = Path(home).expanduser()
        pid = read_pid(home_path)
        if pid is None:
            console.print("[yellow]Daemon is not running.[/]")
            return

        try:
            os.kill(pid, signal.SIGTERM)
            console.print(f"\n  [green]Sent SIGTERM to daemon (PID {pid})[/]\n")
        except ProcessLookupError:
            console.print("[yellow]Daemon process not found, cleaning up PID file.[/]")
            (home_path / PID_FILE).unlink(missing_ok=True)

    @daemon.command("status")
    @home_option
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def daemon_status(home: str, json_out: bool):
        """Show daemon status."""
        from ..daemon import get_daemon_status, read_pid

        settings = load_or_exit(home)
        pid = read_pid(settings.home)
        if pid is None:
            if json_out:
                click.echo(json.dumps({"running": False}))
            else:
                console.print("\n  [yellow]Daemon is not running.[/]\n")
            return

        status = get_daemon_status(settings.api_port)
        if json_out:
            click.echo(json.dumps(status or {"running": True, "pid": pid, "api": "unreachable"}, indent=2))
            return
        if not status:
            console.print(f"\n  [yellow]Daemon running (PID {pid}) but API unreachable.[/]\n")
            return

        uptime = int(status.get("uptime_seconds", 0))
        h, remainder = divmod(uptime, 3600)
        m, s = divmod(remainder, 60)
        console.print()
        console.print(
            Panel(
                f"PID: [bold]{status.get('pid')}[/]\n"
                f"Uptime: [bold]{h}h {m}m {s}s[/]\n"
                f"Ticks: [bold]{status.get('ticks', 0)}[/]\n"
                f"Published: [bold]{status.get('published', 0)}[/]"
                f" | Upload failures: [bold]{status.get('upload_failures', 0)}[/]\n"
                f"Backups: [bold]{status.get('backups_ok', 0)}[/] ok"
                f" / [bold]{status.get('backups_failed', 0)}[/] failed\n"
                f"Last tick: {status.get('last_tick') or '[dim]never[/]'}\n"
                f"Last backup: {status.get('last_backup') or '[dim]never[/]'}",
                title="[green]Daemon Running[/]",
                border_style="green",
            )
        )

        guilds = status.get("guilds") or {}
        if guilds:
            table = Table(title="Guilds")
            table.add_column("Guild", style="cyan")
            table.add_column("Dirty")
            table.add_column("Counter", justify="right")
            for guild_id, entry in sorted(guilds.items()):
                counter = entry.get("refresh_counter")
                table.add_row(
                    guild_id,
                    "[yellow]yes[/]" if entry.get("dirty") else "[green]no[/]",
                    "-" if counter is None else str(counter),
                )
            console.print(table)

        errors = status.get("recent_errors") or []
        if errors:
            console.print("\n  [red]Recent errors:[/]")
            for err in errors:
                console.print(f"    {err}")
        console.print()
