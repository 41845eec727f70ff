"""
Per-guild staleness tracking.

Each tracked guild owns a dirty latch and a refresh counter. The latch
is sticky: event handlers may only set it, and only the publish
coordinator clears it when a cycle starts. The counter forces a
republish well before the last signed token expires, even if nothing
changed in the guild.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("rolepass.staleness")


def refresh_limit(token_expiry: int, poll_interval: int) -> int:
    """Counter value past which a refresh is forced.

    ``floor(token_expiry / poll_interval / 3) - 1``: a token is replaced
    about three times per lifetime, leaving margin for clock skew and
    slow cycles.
    """
    if poll_interval <= 0:
        raise ValueError("poll_interval must be positive")
    return int(token_expiry / poll_interval / 3) - 1


@dataclass
class StalenessState:
    """Mutable per-guild state. Only the tracker touches it."""

    dirty: bool
    refresh_counter: Optional[int] = None


class StalenessTracker:
    """Thread-safe map of guild id -> StalenessState.

    Args:
        limit: Refresh limit, see ``refresh_limit``.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self._lock = threading.Lock()
        self._states: dict[str, StalenessState] = {}

    @classmethod
    def for_intervals(cls, token_expiry: int, poll_interval: int) -> "StalenessTracker":
        return cls(refresh_limit(token_expiry, poll_interval))

    def mark_dirty(self, tenant_id: str, dirty: bool) -> None:
        """Record that a guild may owe a republish.

        The first observation seeds the state with ``dirty`` as given.
        Afterwards ``True`` sets the latch and ``False`` changes nothing.
        """
        with self._lock:
            state = self._states.get(tenant_id)
            if state is None:
                self._states[tenant_id] = StalenessState(dirty=dirty)
                if dirty:
                    logger.info("Guild %s is dirty (first seen)", tenant_id)
                return
            if dirty and not state.dirty:
                state.dirty = True
                logger.info("Guild %s is dirty", tenant_id)

    def consume_if_due(self, tenant_id: str) -> bool:
        """Decide whether this pass should republish the guild.

        The first call only seeds the refresh counter and reports the
        latch. Later calls advance the counter; a republish is due when
        the latch is set or the counter has passed the limit, and a due
        answer resets the counter. The latch itself is left alone.
        """
        with self._lock:
            state = self._states.get(tenant_id)
            if state is None:
                return False
            if state.refresh_counter is None:
                state.refresh_counter = 0
                return state.dirty

            state.refresh_counter += 1
            force_refresh = state.refresh_counter > self.limit
            if force_refresh:
                logger.info("Guild %s token refresh forced", tenant_id)
            if state.dirty or force_refresh:
                state.refresh_counter = 0
                return True
            return False

    def clear_dirty(self, tenant_id: str) -> None:
        """Reset the latch. Reserved for the coordinator at cycle start."""
        with self._lock:
            state = self._states.get(tenant_id)
            if state is not None:
                state.dirty = False

    def is_tracked(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._states

    def is_dirty(self, tenant_id: str) -> bool:
        with self._lock:
            state = self._states.get(tenant_id)
            return bool(state and state.dirty)

    def tracked(self) -> list[str]:
        """Tracked guild ids, in first-seen order."""
        with self._lock:
            return list(self._states)

    def forget(self, tenant_id: str) -> None:
        """Drop a guild's state, e.g. when the bot leaves it."""
        with self._lock:
            self._states.pop(tenant_id, None)

    def snapshot(self) -> dict[str, dict]:
        """Serializable copy of all states for the status API."""
        with self._lock:
            return {
                tid: {"dirty": s.dirty, "refresh_counter": s.refresh_counter}
                for tid, s in self._states.items()
            }
