"""One-shot commands: publish and backup."""

from __future__ import annotations

import sys
import time
from typing import Optional

import click
from rich.table import Table

from ._common import console, home_option, load_or_exit, short_hash

_OUTCOME_STYLE = {
    "published": "[green]published[/]",
    "published_filler": "[yellow]filler[/]",
    "upload_failed": "[bold red]upload failed[/]",
    "skipped_untracked": "[dim]not in guild[/]",
    "skipped_not_due": "[dim]not due[/]",
}


def _runtime_or_exit(settings):
    from ..runtime import Runtime
    from ..signer import SigningKeyError

    try:
        return Runtime(settings)
    except SigningKeyError as exc:
        console.print(f"[bold red]Cannot load signing key:[/] {exc}")
        sys.exit(1)


def register_publish_commands(main: click.Group) -> None:
    """Register publish and backup."""

    @main.command()
    @home_option
    @click.option("--tenant", "tenant_id", default=None, help="Publish only this guild.")
    def publish(home: str, tenant_id: Optional[str]):
        """Run one forced publish pass and exit."""
        settings = load_or_exit(home)
        runtime = _runtime_or_exit(settings)

        tenants = runtime.source.tenants()
        if tenant_id is not None and tenant_id not in tenants:
            console.print(f"[bold red]Unknown guild:[/] {tenant_id}")
            sys.exit(1)

        runtime.coordinator.track_tenants(tenants)
        results = runtime.publish_once(tenant_id=tenant_id, force=True)
        if not results:
            console.print("[yellow]No guilds to publish.[/]")
            return

        table = Table(title="Publish pass")
        table.add_column("Guild", style="cyan")
        table.add_column("Outcome")
        table.add_column("Size", justify="right")
        table.add_column("Hash")
        table.add_column("URL", style="dim")
        for result in results:
            table.add_row(
                result.tenant_id,
                _OUTCOME_STYLE.get(result.outcome.value, result.outcome.value),
                str(result.artifact_size) if result.attempted else "-",
                short_hash(result.data_hash),
                runtime.registry.public_url(result.tenant_id) or "",
            )
        console.print(table)

        if any(r.outcome.value == "upload_failed" for r in results):
            sys.exit(1)

    @main.command()
    @home_option
    def backup(home: str):
        """Back up the registry once.

        A failure keeps retrying in this process until it succeeds or
        the retry cap is reached.
        """
        settings = load_or_exit(home)
        runtime = _runtime_or_exit(settings)
        scheduler = runtime.backup_scheduler

        if scheduler.run():
            console.print("[green]Backup uploaded.[/]")
            return

        console.print(
            f"[yellow]Backup failed, retrying every {settings.backup.retry_interval_sec}s "
            f"(max {settings.backup.max_retries}). Ctrl+C to abort.[/]"
        )
        try:
            while scheduler.pending:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            scheduler.shutdown()
        if not scheduler.last_ok:
            console.print("[bold red]Backup did not succeed.[/]")
            sys.exit(1)
        console.print("[green]Backup uploaded after retry.[/]")
