"""
Publish coordinator -- one guild, one cycle.

    due? -> refresh members -> clear dirty -> snapshot -> encode (or filler)
         -> sha256 -> sign -> base64 & token -> upload -> (re-mark on failure)

The dirty latch is cleared before the snapshot reads live membership,
so a change that lands while a cycle is in flight marks the guild dirty
again and is picked up by a later tick.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from .events import ChangeFeed
from .hashing import sha256
from .membership import MembershipCache
from .models import CycleOutcome, CycleResult
from .payload import build_publishable, encode_snapshot, filler_bytes
from .registry import Registry
from .signer import TokenSigner
from .snapshot import extract_snapshot
from .staleness import StalenessTracker
from .storage import ArtifactPublisher

logger = logging.getLogger("rolepass.coordinator")


class PublishCoordinator:
    """Runs publish cycles for every tracked guild.

    Args:
        tracker: Staleness latches.
        members: Rate-limited membership cache.
        registry: Registered names.
        signer: Token signer.
        publisher: Artifact uploader.
        token_expiry: Token lifetime in seconds.
        feed: Change feed drained at the start of every pass.
    """

    def __init__(
        self,
        tracker: StalenessTracker,
        members: MembershipCache,
        registry: Registry,
        signer: TokenSigner,
        publisher: ArtifactPublisher,
        token_expiry: int,
        feed: Optional[ChangeFeed] = None,
    ):
        self.tracker = tracker
        self.members = members
        self.registry = registry
        self.signer = signer
        self.publisher = publisher
        self.token_expiry = token_expiry
        self.feed = feed or ChangeFeed()

    def publish_tenant(self, tenant_id: str, tenant_name: str = "") -> CycleResult:
        """Run one cycle for one guild.

        Returns:
            CycleResult: What happened. Upload failures re-mark the guild
            dirty; the next tick retries.
        """
        if not self.tracker.is_tracked(tenant_id):
            return CycleResult(tenant_id=tenant_id, outcome=CycleOutcome.SKIPPED_UNTRACKED)
        if not self.tracker.consume_if_due(tenant_id):
            return CycleResult(tenant_id=tenant_id, outcome=CycleOutcome.SKIPPED_NOT_DUE)

        self.members.refresh(tenant_id)
        self.tracker.clear_dirty(tenant_id)

        logger.info("Publish start: %s (%s)", tenant_name, tenant_id)
        start = time.perf_counter()

        snapshot = extract_snapshot(
            self.members.principal_roles(tenant_id),
            self.members.member_roles(tenant_id),
            self.registry.registered_members(tenant_id),
        )
        if snapshot.valid:
            artifact = encode_snapshot(snapshot)
            outcome = CycleOutcome.PUBLISHED
        else:
            logger.info("%s: %s, publishing filler", tenant_name or tenant_id, snapshot.reason)
            artifact = filler_bytes()
            outcome = CycleOutcome.PUBLISHED_FILLER

        data_hash = sha256(artifact).hex()
        token = self.signer.sign(data_hash, self.token_expiry)
        payload = build_publishable(artifact, token)

        uploaded = self.publisher.upload(tenant_id, tenant_name, payload)
        elapsed_ms = (time.perf_counter() - start) * 1000
        if not uploaded:
            self.tracker.mark_dirty(tenant_id, True)
            outcome = CycleOutcome.UPLOAD_FAILED
            logger.warning("Upload failed for %s, retrying next tick", tenant_id)

        logger.info(
            "Publish end: %s hash=%s size=%d %.1fms [%s]",
            tenant_id, data_hash[:16], len(artifact), elapsed_ms, outcome.value,
        )
        return CycleResult(
            tenant_id=tenant_id,
            outcome=outcome,
            data_hash=data_hash,
            artifact_size=len(artifact),
            elapsed_ms=elapsed_ms,
        )

    def publish_all(self, tenants: dict[str, str]) -> list[CycleResult]:
        """One tick: drain pending change messages, then cycle each guild.

        Guilds are processed one after another. A guild whose cycle raises
        is logged and re-marked dirty; the others still run.

        Args:
            tenants: Guild id -> guild name for the guilds the bot is in.

        Returns:
            list[CycleResult]: One entry per guild that did not raise.
        """
        self.feed.drain(self.tracker)
        results = []
        for tenant_id, tenant_name in tenants.items():
            try:
                results.append(self.publish_tenant(tenant_id, tenant_name))
            except Exception as exc:
                logger.error("Publish cycle for %s failed: %s", tenant_id, exc)
                self.tracker.mark_dirty(tenant_id, True)
        return results

    def track_tenants(self, tenants: dict[str, str]) -> None:
        """Mark every current guild dirty and forget departed ones.

        Called at startup and when the bot joins or leaves a guild.
        """
        current = set(tenants)
        for tenant_id in self.tracker.tracked():
            if tenant_id not in current:
                self.tracker.forget(tenant_id)
                self.members.forget(tenant_id)
        for tenant_id in tenants:
            self.tracker.mark_dirty(tenant_id, True)
        self.registry.cleanup(current)
