"""
Snapshot extraction: live guild membership -> hashed, bit-packed snapshot.

The privileged roles are the roles attached to the bot principal. At
most eight of them fit in a member's one-byte bitmask, and at most 3000
registered names fit the artifact budget. Guilds outside those bounds
publish filler instead (see the coordinator).
"""

from __future__ import annotations

import logging
import secrets
from typing import Iterable, Mapping, Optional, Sequence

from .hashing import hash_many
from .models import MAX_PRIVILEGED_ROLES, MAX_REGISTERED_MEMBERS, Role, Snapshot

logger = logging.getLogger("rolepass.snapshot")

EVERYONE_ROLE = "@everyone"

REASON_ROLE_COUNT = "no or too many privileged roles"
REASON_MEMBER_COUNT = "no or too many registered members"
REASON_NO_TARGETS = "no registered member holds a privileged role"


def attached_role_names(roles: Iterable[Role]) -> list[str]:
    """Names of the roles that count for membership proofs.

    Drops ``@everyone`` and integration-managed bot roles, and collapses
    duplicate names while keeping first-seen order.
    """
    names: list[str] = []
    for role in roles:
        if role.managed_by_bot or role.name == EVERYONE_ROLE:
            continue
        if role.name not in names:
            names.append(role.name)
    return names


def role_bitmask(privileged_roles: Sequence[str], member_roles: Iterable[str]) -> int:
    """Bit ``i`` is set iff the member holds ``privileged_roles[i]``."""
    held = set(member_roles)
    mask = 0
    for i, name in enumerate(privileged_roles):
        if name in held:
            mask |= 1 << i
    return mask


def random_salt() -> int:
    """Fresh unsigned 32-bit salt from the OS CSPRNG."""
    return secrets.randbits(32)


def extract_snapshot(
    privileged_roles: Sequence[str],
    member_roles: Mapping[str, Sequence[str]],
    registered: Mapping[str, str],
    salt: Optional[int] = None,
) -> Snapshot:
    """Build the snapshot for one guild.

    Args:
        privileged_roles: Role names held by the bot principal, in order.
            Bit ``i`` of every bitmask refers to entry ``i``.
        member_roles: Member id -> role names, for members currently in
            the guild. Iteration order fixes the member order.
        registered: Member id -> registered name.
        salt: Override the random salt (tests only).

    Returns:
        Snapshot: ``valid=False`` with a reason when there is nothing to
        publish.
    """
    if not privileged_roles or len(privileged_roles) > MAX_PRIVILEGED_ROLES:
        return Snapshot.invalid(REASON_ROLE_COUNT)
    if not registered or len(registered) > MAX_REGISTERED_MEMBERS:
        return Snapshot.invalid(REASON_MEMBER_COUNT)

    target_ids: list[str] = []
    bitmasks: list[int] = []
    for member_id, roles in member_roles.items():
        if member_id not in registered:
            continue
        mask = role_bitmask(privileged_roles, roles)
        if mask == 0:
            continue
        target_ids.append(member_id)
        bitmasks.append(mask)

    if not target_ids:
        return Snapshot.invalid(REASON_NO_TARGETS)

    cycle_salt = random_salt() if salt is None else salt
    role_hashes = hash_many(cycle_salt, privileged_roles)
    member_hashes = hash_many(cycle_salt, (registered[m] for m in target_ids))

    logger.debug(
        "Snapshot: %d roles, %d of %d registered members",
        len(role_hashes), len(member_hashes), len(registered),
    )
    return Snapshot(
        valid=True,
        random_salt=cycle_salt,
        role_hashes=role_hashes,
        member_hashes=member_hashes,
        member_role_bitmask=bitmasks,
    )
