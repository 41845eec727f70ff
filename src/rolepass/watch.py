"""
File change watcher.

The file-backed membership source and the names registry have no event
stream of their own. Once per tick the daemon asks the watcher to look
at their modification times; edits are diffed and turned into dirty
messages on the change feed, exactly as platform events would be.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

import yaml

from .events import ChangeFeed, membership_changed, name_registered
from .membership import MembershipCache, StaticMembershipSource
from .registry import Registry
from .snapshot import attached_role_names

logger = logging.getLogger("rolepass.watch")


def _mtime(path: Path) -> Optional[int]:
    try:
        return path.stat().st_mtime_ns
    except FileNotFoundError:
        return None


class ChangeWatcher:
    """Turns on-disk edits into change feed messages.

    Args:
        feed: Where dirty messages go.
        registry: Names registry to watch.
        members: Membership cache, for the roles of renamed members.
        source: Static source to reload when ``membership_file`` changes.
        membership_file: YAML backing ``source``.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        registry: Registry,
        members: MembershipCache,
        source: Optional[StaticMembershipSource] = None,
        membership_file: Optional[Path] = None,
    ):
        self.feed = feed
        self.registry = registry
        self.members = members
        self.source = source
        self.membership_file = membership_file
        self._membership_mtime = _mtime(membership_file) if membership_file else None
        self._names: dict[str, dict[str, str]] = {}
        self._names_mtime: dict[str, int] = {}

    def prime(self, tenant_ids: Iterable[str]) -> None:
        """Record the current registry state without posting anything."""
        for tenant_id in tenant_ids:
            self._names[tenant_id] = self.registry.registered_members(tenant_id)
            mtime = _mtime(self.registry.names_path(tenant_id))
            if mtime is not None:
                self._names_mtime[tenant_id] = mtime

    def poll(self, tenant_ids: Iterable[str]) -> int:
        """Check for edits since the last poll.

        Returns:
            int: Number of dirty messages posted.
        """
        posted = 0
        if self._membership_reloaded():
            posted += self._post_membership_changes()
        for tenant_id in tenant_ids:
            posted += self._check_names(tenant_id)
        return posted

    def _membership_reloaded(self) -> bool:
        if self.source is None or self.membership_file is None:
            return False
        mtime = _mtime(self.membership_file)
        if mtime is None or mtime == self._membership_mtime:
            return False
        self._membership_mtime = mtime
        return True

    def _post_membership_changes(self) -> int:
        try:
            fresh = StaticMembershipSource.from_yaml(self.membership_file)
        except (OSError, yaml.YAMLError, ValueError) as exc:
            logger.error("Cannot reload %s: %s", self.membership_file, exc)
            return 0

        posted = 0
        principal_changed = fresh.principal_id != self.source.principal_id
        for tenant_id in set(self.source.tenants()) & set(fresh.tenants()):
            before = _role_names(self.source.fetch_members(tenant_id))
            after = _role_names(fresh.fetch_members(tenant_id))
            registered = self.registry.registered_members(tenant_id)
            if principal_changed or membership_changed(before, after, fresh.principal_id, registered):
                self.feed.post(tenant_id, True, "membership changed")
                posted += 1
        self.source.replace(fresh)
        logger.info("Reloaded %s (%d guild(s) changed)", self.membership_file, posted)
        return posted

    def _check_names(self, tenant_id: str) -> int:
        mtime = _mtime(self.registry.names_path(tenant_id))
        if mtime is None or mtime == self._names_mtime.get(tenant_id):
            return 0
        self._names_mtime[tenant_id] = mtime

        before = self._names.get(tenant_id, {})
        after = self.registry.registered_members(tenant_id)
        self._names[tenant_id] = after
        changed = [m for m in set(before) | set(after) if before.get(m) != after.get(m)]
        if not changed:
            return 0

        privileged = self.members.principal_roles(tenant_id)
        for member_id in changed:
            if name_registered(self.members.roles_of(tenant_id, member_id), privileged):
                self.feed.post(tenant_id, True, f"name of {member_id} changed")
                return 1
        return 0


def _role_names(members: dict) -> dict[str, list[str]]:
    return {m: attached_role_names(roles) for m, roles in members.items()}
