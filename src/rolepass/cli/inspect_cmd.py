"""Inspect command: decode and verify a published payload."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel

from ._common import console


def register_inspect_commands(main: click.Group) -> None:
    """Register the inspect command."""

    @main.command()
    @click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
    @click.option("--public-key", "public_key", type=click.Path(exists=True, dir_okay=False),
                  default=None, help="PEM public key (default: <home>/keys/public_key.pem).")
    @click.option("--home", default=None, type=click.Path(), help="RolePass home for the default key.")
    @click.option("--leeway", default=0, help="Clock skew tolerance in seconds.")
    def inspect(payload_file: str, public_key: Optional[str], home: Optional[str], leeway: int):
        """Decode PAYLOAD_FILE, verify its token and summarize the artifact."""
        from .. import ROLEPASS_HOME
        from ..hashing import sha256
        from ..payload import FILLER_SIZE, PayloadDecodingError, decode_artifact, split_publishable
        from ..signer import PUBLIC_KEY_FILE, TokenVerificationError, verify_token

        text = Path(payload_file).read_text(encoding="utf-8").strip()
        try:
            artifact, token = split_publishable(text)
        except PayloadDecodingError as exc:
            console.print(f"[bold red]Not a publishable payload:[/] {exc}")
            sys.exit(1)

        key_path = Path(public_key) if public_key else (
            Path(home or ROLEPASS_HOME).expanduser() / "keys" / PUBLIC_KEY_FILE
        )
        if not key_path.exists():
            console.print(f"[bold red]Public key not found:[/] {key_path}")
            sys.exit(1)

        lines = [f"Artifact: [bold]{len(artifact)}[/] bytes"]
        data_hash = sha256(artifact).hex()
        ok = True
        try:
            claims = verify_token(token, key_path.read_text(encoding="utf-8"), leeway=leeway)
        except TokenVerificationError as exc:
            lines.append(f"Token: [bold red]{exc}[/]")
            ok = False
        else:
            lines.append(f"Token: [green]valid[/] until {claims.expires_at.isoformat()}")
            if claims.data_hash != data_hash:
                lines.append("Data hash: [bold red]does not match artifact[/]")
                ok = False
            else:
                lines.append(f"Data hash: [green]{data_hash[:16]}...[/]")

        if len(artifact) == FILLER_SIZE:
            lines.append("Content: [yellow]filler (guild not publishable)[/]")
        else:
            try:
                snapshot = decode_artifact(artifact)
            except PayloadDecodingError as exc:
                lines.append(f"Content: [bold red]{exc}[/]")
                ok = False
            else:
                lines.append(f"Salt: {snapshot.random_salt}")
                lines.append(f"Roles: [bold]{snapshot.role_count}[/]")
                lines.append(f"Members: [bold]{snapshot.member_count}[/]")

        console.print(
            Panel(
                "\n".join(lines),
                title="[green]Payload OK[/]" if ok else "[red]Payload INVALID[/]",
                border_style="green" if ok else "red",
            )
        )
        if not ok:
            sys.exit(1)
