"""Init command: lay out a RolePass home and generate the signing key."""

from __future__ import annotations

from pathlib import Path

import click

from ._common import console, home_option


def register_setup_commands(main: click.Group) -> None:
    """Register the init command."""

    @main.command()
    @home_option
    @click.option("--bits", default=2048, show_default=True, help="RSA key size.")
    @click.option("--force", is_flag=True, help="Replace an existing key pair.")
    def init(home: str, bits: int, force: bool):
        """Create the home directory, default config and RSA key pair."""
        from ..config import load_settings, write_default_config
        from ..signer import generate_keypair

        home_path = Path(home).expanduser()
        for sub in ("config", "keys", "logs", "registry"):
            (home_path / sub).mkdir(parents=True, exist_ok=True)

        config_file = write_default_config(home_path)
        settings = load_settings(home_path)
        console.print(f"\n  Config: [cyan]{config_file}[/]")

        private_path = generate_keypair(settings.key_dir, bits=bits, overwrite=force)
        if private_path is None:
            console.print(f"  Keys:   [yellow]kept existing pair in {settings.key_dir}[/]")
        else:
            console.print(f"  Keys:   [green]generated[/] in {private_path.parent}")
            console.print("  [dim]Distribute public_key.pem to verifying clients.[/]")
        console.print()
