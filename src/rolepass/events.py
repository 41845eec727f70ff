"""
Change notifications -> dirty messages.

Guild events (joins, role edits, member updates, departures) arrive at
whatever rate the chat platform sends them. Handlers decide whether an
event can change the artifact and post a message; the publish loop
drains the feed into the staleness tracker once per tick.
"""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass
from typing import Container, Iterable, Mapping, Sequence

from .staleness import StalenessTracker

logger = logging.getLogger("rolepass.events")


@dataclass(frozen=True)
class DirtyMessage:
    tenant_id: str
    dirty: bool
    reason: str = ""


class ChangeFeed:
    """Unbounded FIFO of dirty messages, safe to post from any thread."""

    def __init__(self):
        self._queue: "queue.Queue[DirtyMessage]" = queue.Queue()

    def post(self, tenant_id: str, dirty: bool, reason: str = "") -> None:
        self._queue.put(DirtyMessage(tenant_id, dirty, reason))

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self, tracker: StalenessTracker) -> int:
        """Apply every queued message to ``tracker``.

        Returns:
            int: Number of messages applied.
        """
        applied = 0
        while True:
            try:
                msg = self._queue.get_nowait()
            except queue.Empty:
                break
            tracker.mark_dirty(msg.tenant_id, msg.dirty)
            if msg.dirty:
                logger.debug("Guild %s marked dirty: %s", msg.tenant_id, msg.reason)
            applied += 1
        return applied


def _overlaps(a: Iterable[str], b: Iterable[str]) -> bool:
    return not set(a).isdisjoint(b)


def tenant_joined() -> bool:
    """The bot was added to a guild, or came online in it."""
    return True


def principal_roles_changed(removed: Sequence[str], added: Sequence[str]) -> bool:
    """The bot's own roles changed, so the privileged set changed."""
    return bool(removed or added)


def role_renamed(old_name: str, privileged_roles: Sequence[str]) -> bool:
    """A role was edited; only privileged roles matter."""
    return old_name in privileged_roles


def member_roles_changed(
    is_registered: bool,
    privileged_roles: Sequence[str],
    removed: Sequence[str],
    added: Sequence[str],
) -> bool:
    """A member gained or lost roles.

    Only registered members with a privileged role in the change set can
    alter the artifact.
    """
    if not is_registered or not privileged_roles:
        return False
    return _overlaps(removed, privileged_roles) or _overlaps(added, privileged_roles)


def member_left(
    is_registered: bool,
    member_roles: Sequence[str],
    privileged_roles: Sequence[str],
) -> bool:
    """A member left the guild while possibly appearing in the artifact."""
    if not is_registered:
        return False
    return _overlaps(member_roles, privileged_roles)


def name_registered(member_roles: Sequence[str], privileged_roles: Sequence[str]) -> bool:
    """A member registered or changed their name.

    Only matters if the member already holds a privileged role.
    """
    if not member_roles or not privileged_roles:
        return False
    return _overlaps(member_roles, privileged_roles)


def membership_changed(
    before: Mapping[str, Sequence[str]],
    after: Mapping[str, Sequence[str]],
    principal_id: str,
    registered: Container[str],
) -> bool:
    """Whether two member -> role-name views of a guild differ in a way
    the artifact can see.

    Replays the per-event rules above over a diff, for sources that
    deliver whole member lists instead of change events.
    """
    privileged = list(before.get(principal_id, []))
    new_privileged = list(after.get(principal_id, []))
    if principal_roles_changed(
        [r for r in privileged if r not in new_privileged],
        [r for r in new_privileged if r not in privileged],
    ):
        return True

    for member_id in set(before) | set(after):
        if member_id == principal_id:
            continue
        old = before.get(member_id)
        new = after.get(member_id)
        is_registered = member_id in registered
        if new is None:
            if member_left(is_registered, old, privileged):
                return True
            continue
        old = old or []
        removed = [r for r in old if r not in new]
        added = [r for r in new if r not in old]
        if member_roles_changed(is_registered, privileged, removed, added):
            return True
    return False
