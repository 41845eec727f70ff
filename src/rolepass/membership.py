"""
Guild membership cache.

The chat platform is the source of truth for who is in a guild and
which roles they hold. Fetching a full member list is slow and rate
limited, so the cache refreshes a guild at most once per cool-down
window; a refresh inside the window is skipped, not queued.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

import yaml

from .models import Role
from .snapshot import attached_role_names

logger = logging.getLogger("rolepass.membership")

DEFAULT_COOLDOWN = 30.0


class MembershipSource(Protocol):
    """What the publisher needs from the chat platform."""

    principal_id: str

    def tenants(self) -> dict[str, str]:
        """Guild id -> guild name for every guild the bot is in."""

    def fetch_members(self, tenant_id: str) -> dict[str, list[Role]]:
        """Member id -> attached roles, fetched fresh from the platform."""


class RefreshOutcome(str, Enum):
    REFRESHED = "refreshed"
    SKIPPED = "skipped"


class StaticMembershipSource:
    """Membership held in memory, optionally loaded from YAML.

    YAML layout::

        principal_id: "bot"
        tenants:
          "1234":
            name: My Guild
            members:
              bot: [Verified, Staff]
              alice: [Verified]
              helper: [{name: HelperBot, managed_by_bot: true}]
    """

    def __init__(self, principal_id: str, tenants: Optional[dict] = None):
        self.principal_id = principal_id
        self._lock = threading.Lock()
        self._tenants: dict[str, dict] = {}
        for tenant_id, data in (tenants or {}).items():
            self.set_tenant(tenant_id, data.get("name", ""), data.get("members", {}))

    @classmethod
    def from_yaml(cls, path: Path) -> "StaticMembershipSource":
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        return cls(
            principal_id=str(data.get("principal_id", "")),
            tenants={str(k): v or {} for k, v in (data.get("tenants") or {}).items()},
        )

    def set_tenant(self, tenant_id: str, name: str, members: dict) -> None:
        parsed = {
            str(member_id): [_to_role(r) for r in (roles or [])]
            for member_id, roles in members.items()
        }
        with self._lock:
            self._tenants[str(tenant_id)] = {"name": name, "members": parsed}

    def set_member(self, tenant_id: str, member_id: str, roles: list) -> None:
        with self._lock:
            self._tenants[tenant_id]["members"][member_id] = [_to_role(r) for r in roles]

    def remove_member(self, tenant_id: str, member_id: str) -> None:
        with self._lock:
            self._tenants[tenant_id]["members"].pop(member_id, None)

    def remove_tenant(self, tenant_id: str) -> None:
        with self._lock:
            self._tenants.pop(tenant_id, None)

    def replace(self, other: "StaticMembershipSource") -> None:
        """Take over another source's principal and guilds, e.g. after a reload."""
        with other._lock:
            principal_id = other.principal_id
            tenants = dict(other._tenants)
        with self._lock:
            self.principal_id = principal_id
            self._tenants = tenants

    def tenants(self) -> dict[str, str]:
        with self._lock:
            return {tid: t["name"] for tid, t in self._tenants.items()}

    def fetch_members(self, tenant_id: str) -> dict[str, list[Role]]:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None:
                return {}
            return {m: list(roles) for m, roles in tenant["members"].items()}


def _to_role(value: Union[str, dict, Role]) -> Role:
    if isinstance(value, Role):
        return value
    if isinstance(value, dict):
        return Role(**value)
    return Role(name=str(value))


class MembershipCache:
    """Rate-limited per-guild copy of the platform's member list.

    Args:
        source: Platform adapter.
        cooldown: Minimum seconds between two fetches of the same guild.
        clock: Monotonic time source. Injectable for tests.
    """

    def __init__(
        self,
        source: MembershipSource,
        cooldown: float = DEFAULT_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._members: dict[str, dict[str, list[Role]]] = {}
        self._last_fetch: dict[str, float] = {}

    def refresh(self, tenant_id: str) -> RefreshOutcome:
        """Fetch the guild's members unless fetched within the cool-down.

        Returns:
            RefreshOutcome: SKIPPED leaves the cached copy untouched.
        """
        now = self._clock()
        with self._lock:
            last = self._last_fetch.get(tenant_id)
            if last is not None and now - last < self.cooldown:
                logger.debug("Member refresh for %s skipped (cool-down)", tenant_id)
                return RefreshOutcome.SKIPPED
            # Claim the window before the slow fetch so concurrent callers skip.
            self._last_fetch[tenant_id] = now

        try:
            members = self.source.fetch_members(tenant_id)
        except Exception:
            with self._lock:
                if last is None:
                    self._last_fetch.pop(tenant_id, None)
                else:
                    self._last_fetch[tenant_id] = last
            raise
        with self._lock:
            self._members[tenant_id] = members
        logger.debug("Fetched %d members for %s", len(members), tenant_id)
        return RefreshOutcome.REFRESHED

    def principal_roles(self, tenant_id: str) -> list[str]:
        """Privileged role names: the roles attached to the bot principal."""
        return self.roles_of(tenant_id, self.source.principal_id)

    def roles_of(self, tenant_id: str, member_id: str) -> list[str]:
        with self._lock:
            roles = self._members.get(tenant_id, {}).get(member_id, [])
        return attached_role_names(roles)

    def member_roles(self, tenant_id: str) -> dict[str, list[str]]:
        """Member id -> effective role names for every cached member."""
        with self._lock:
            members = dict(self._members.get(tenant_id, {}))
        return {m: attached_role_names(roles) for m, roles in members.items()}

    def forget(self, tenant_id: str) -> None:
        with self._lock:
            self._members.pop(tenant_id, None)
            self._last_fetch.pop(tenant_id, None)
