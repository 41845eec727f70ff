"""Key commands: print the verification key."""

from __future__ import annotations

import sys

import click

from ._common import console, home_option, load_or_exit


def register_key_commands(main: click.Group) -> None:
    """Register the key command group."""

    @main.group()
    def key():
        """Signing key management."""

    @key.command("public")
    @home_option
    def key_public(home: str):
        """Print the PEM public key that clients verify tokens with."""
        from ..signer import SigningKeyError, TokenSigner

        settings = load_or_exit(home)
        try:
            signer = TokenSigner.from_key_dir(settings.key_dir)
        except SigningKeyError as exc:
            console.print(f"[bold red]Cannot load signing key:[/] {exc}")
            sys.exit(1)
        click.echo(signer.public_key_pem().rstrip("\n"))
