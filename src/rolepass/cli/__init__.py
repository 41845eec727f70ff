"""
RolePass CLI -- run and inspect the role-membership publisher.

The main Click group is defined here and every command group is
registered from its own module.

Entry point: rolepass.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="rolepass")
def main():
    """RolePass -- signed, hashed role membership for untrusted clients."""


from .daemon import register_daemon_commands
from .inspect_cmd import register_inspect_commands
from .key import register_key_commands
from .names import register_name_commands
from .publish import register_publish_commands
from .setup import register_setup_commands

register_setup_commands(main)
register_daemon_commands(main)
register_publish_commands(main)
register_key_commands(main)
register_name_commands(main)
register_inspect_commands(main)
