"""
RolePass: signed proof-of-membership artifacts for guilds.

Publishes, per guild, a compact binary artifact of salted hashes that
tells an offline consumer which registered members hold which
privileged roles. Every artifact travels with an RS256 token that binds
its SHA-256 to an expiry.
"""

import os

__version__ = "0.1.0"
__author__ = "rolepass"

ROLEPASS_HOME = os.environ.get("ROLEPASS_HOME", "~/.rolepass")
