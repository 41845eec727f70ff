"""
Runtime wiring -- settings in, ready-to-run components out.

The daemon and the one-shot CLI commands share this assembly so that a
``rolepass publish`` behaves exactly like one daemon tick.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .backup import BackupJob, BackupRetryScheduler
from .config import BucketSettings, Settings
from .coordinator import PublishCoordinator
from .events import ChangeFeed
from .membership import MembershipCache, MembershipSource, StaticMembershipSource
from .registry import Registry
from .signer import TokenSigner
from .staleness import StalenessTracker
from .storage import ArtifactPublisher, CachePurger, LocalObjectStore, NullPurger, ObjectStore, S3ObjectStore
from .watch import ChangeWatcher

logger = logging.getLogger("rolepass.runtime")


def make_store(bucket: BucketSettings, settings: Settings, default_dir: str) -> ObjectStore:
    """S3 store for a configured remote bucket, else a local directory."""
    if bucket.is_remote:
        return S3ObjectStore(
            endpoint_url=bucket.endpoint_url,
            bucket=bucket.bucket_name,
            access_key_id=bucket.access_key_id,
            secret_key=bucket.secret_key,
        )
    root = settings.resolve(bucket.local_path or Path(default_dir))
    logger.info("Bucket not configured, using local store at %s", root)
    return LocalObjectStore(root)


def load_membership_source(settings: Settings) -> MembershipSource:
    """Static membership from the configured YAML file, if present."""
    path = settings.resolve(settings.membership_file)
    if path.exists():
        return StaticMembershipSource.from_yaml(path)
    logger.warning("Membership file %s not found, no guilds will be published", path)
    return StaticMembershipSource(principal_id="")


class Runtime:
    """All long-lived components of a RolePass process.

    Args:
        settings: Validated settings.
        source: Platform adapter. Defaults to the YAML membership file.
        signer: Token signer. Loaded from ``settings.key_dir`` if omitted;
            a missing key raises SigningKeyError.
        public_store: Override the artifact bucket.
        backup_store: Override the backup bucket.
    """

    def __init__(
        self,
        settings: Settings,
        source: Optional[MembershipSource] = None,
        signer: Optional[TokenSigner] = None,
        public_store: Optional[ObjectStore] = None,
        backup_store: Optional[ObjectStore] = None,
    ):
        self.settings = settings
        general = settings.general

        self.signer = signer or TokenSigner.from_key_dir(settings.key_dir)
        watched_source = None
        if source is None:
            source = watched_source = load_membership_source(settings)
        self.source = source
        self.registry = Registry(settings.home)
        self.tracker = StalenessTracker.for_intervals(
            general.token_expire_period_sec, general.data_update_check_interval_sec
        )
        self.feed = ChangeFeed()
        self.members = MembershipCache(self.source, cooldown=general.member_refresh_cooldown_sec)

        purger = (
            CachePurger(settings.cdn.zone_id, settings.cdn.purge_api_key)
            if settings.cdn.enabled
            else NullPurger()
        )
        self.publisher = ArtifactPublisher(
            store=public_store or make_store(settings.public_bucket, settings, "public"),
            registry=self.registry,
            purger=purger,
            base_url=settings.public_bucket.base_url,
            path_prefix=settings.path_prefix,
        )
        self.coordinator = PublishCoordinator(
            tracker=self.tracker,
            members=self.members,
            registry=self.registry,
            signer=self.signer,
            publisher=self.publisher,
            token_expiry=general.token_expire_period_sec,
            feed=self.feed,
        )
        self.watcher = ChangeWatcher(
            self.feed,
            self.registry,
            self.members,
            source=watched_source,
            membership_file=settings.resolve(settings.membership_file) if watched_source else None,
        )

        backup = settings.backup
        self.backup_job = BackupJob(
            data_dir=self.registry.data_dir,
            store=backup_store or make_store(settings.backup_bucket, settings, "backups"),
            path_prefix=settings.path_prefix,
            local_dir=settings.home / "backups" if backup.keep_local_copy else None,
        )
        self.backup_scheduler = BackupRetryScheduler(
            self.backup_job,
            interval=backup.retry_interval_sec,
            max_retries=backup.max_retries,
        )

    def publish_once(self, tenant_id: Optional[str] = None, force: bool = False):
        """Run one publish pass, optionally for a single guild.

        Args:
            tenant_id: Restrict the pass to one guild.
            force: Mark the selected guilds dirty first.

        Returns:
            list[CycleResult]
        """
        tenants = self.source.tenants()
        if tenant_id is not None:
            if tenant_id not in tenants:
                logger.warning("Guild %s is not known to the membership source", tenant_id)
                return []
            tenants = {tenant_id: tenants[tenant_id]}
        if force:
            for tid in tenants:
                self.tracker.mark_dirty(tid, True)
        return self.coordinator.publish_all(tenants)
