"""
Registry backups and the bounded retry loop that guards them.

A backup is a gzip-compressed tar of the registry directory with a
manifest of per-file SHA-256 checksums:

    backup-<timestamp>/
    ├── _backup_manifest.json
    ├── published.json
    └── names/<guild_id>.json

Backups run once at startup and then on a fixed period. A failed upload
is retried every ``interval`` seconds, at most ``max_retries`` times
(72 x 10 minutes = 12 hours by default), after which the scheduler gives
up until the next periodic trigger.
"""

from __future__ import annotations

import hashlib
import logging
import tarfile
import threading
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from . import __version__
from .storage import ObjectStore

logger = logging.getLogger("rolepass.backup")

RETRY_INTERVAL = 600
MAX_RETRIES = 72

_PERIOD_UNITS = {"hours": 3600, "days": 86400}


class BackupManifest(BaseModel):
    """Metadata stored inside every backup archive.

    Attributes:
        backup_id: Archive directory name (timestamp-based).
        created_at: When the archive was built.
        version: RolePass version that built it.
        files: Relative path -> SHA-256 hex.
        total_size: Uncompressed size in bytes.
    """

    backup_id: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = __version__
    files: dict[str, str] = Field(default_factory=dict)
    total_size: int = 0


def backup_period_seconds(unit: str, value: int) -> int:
    """Seconds between periodic backup triggers.

    Raises:
        ValueError: Unknown unit or non-positive value.
    """
    if unit not in _PERIOD_UNITS:
        raise ValueError(f"Backup period unit must be 'hours' or 'days', got {unit!r}")
    if value <= 0:
        raise ValueError("Backup period value must be positive")
    return _PERIOD_UNITS[unit] * value


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def create_backup_archive(data_dir: Path) -> tuple[str, bytes]:
    """Archive ``data_dir`` in memory.

    Args:
        data_dir: Registry directory.

    Returns:
        tuple: (archive file name, archive bytes).
    """
    data_dir = Path(data_dir)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
    backup_id = f"backup-{timestamp}"
    manifest = BackupManifest(backup_id=backup_id)

    buf = BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        if data_dir.exists():
            for filepath in sorted(data_dir.rglob("*")):
                if not filepath.is_file() or filepath.suffix == ".tmp":
                    continue
                content = filepath.read_bytes()
                rel = filepath.relative_to(data_dir).as_posix()
                info = tarfile.TarInfo(name=f"{backup_id}/{rel}")
                info.size = len(content)
                info.mtime = int(filepath.stat().st_mtime)
                tar.addfile(info, BytesIO(content))
                manifest.files[rel] = _sha256_bytes(content)
                manifest.total_size += len(content)

        manifest_json = manifest.model_dump_json(indent=2).encode("utf-8")
        info = tarfile.TarInfo(name=f"{backup_id}/_backup_manifest.json")
        info.size = len(manifest_json)
        tar.addfile(info, BytesIO(manifest_json))

    archive = buf.getvalue()
    logger.info(
        "Backup archive %s built (%d files, %d bytes -> %d bytes compressed)",
        backup_id, len(manifest.files), manifest.total_size, len(archive),
    )
    return f"{backup_id}.tar.gz", archive


def restore_backup_archive(blob: bytes, target_dir: Path, verify: bool = True) -> dict[str, Any]:
    """Unpack a backup archive into ``target_dir``.

    Args:
        blob: Archive bytes.
        target_dir: Registry directory to restore into.
        verify: Check restored files against the manifest.

    Returns:
        dict: 'restored', 'verified', 'errors', 'backup_id'.

    Raises:
        ValueError: Empty archive.
    """
    target = Path(target_dir)
    target.mkdir(parents=True, exist_ok=True)
    manifest: Optional[BackupManifest] = None

    with tarfile.open(fileobj=BytesIO(blob), mode="r:gz") as tar:
        members = tar.getmembers()
        if not members:
            raise ValueError("Empty backup archive")
        prefix = members[0].name.split("/")[0]
        manifest_name = f"{prefix}/_backup_manifest.json"

        restored = 0
        for member in members:
            if not member.isfile():
                continue
            f = tar.extractfile(member)
            if f is None:
                continue
            if member.name == manifest_name:
                manifest = BackupManifest.model_validate_json(f.read())
                continue
            member.name = member.name[len(prefix) + 1:]
            tar.extract(member, path=target, filter="data")
            restored += 1

    errors: list[str] = []
    if verify and manifest:
        for rel, expected in manifest.files.items():
            path = target / rel
            if not path.exists():
                errors.append(f"Missing: {rel}")
            elif _sha256_bytes(path.read_bytes()) != expected:
                errors.append(f"Checksum mismatch: {rel}")

    logger.info("Restored %d files to %s (%d verification errors)", restored, target, len(errors))
    return {
        "restored": restored,
        "verified": not errors,
        "errors": errors,
        "backup_id": manifest.backup_id if manifest else "unknown",
    }


class BackupJob:
    """Archive the registry and upload it to the private bucket.

    Args:
        data_dir: Registry directory.
        store: Private bucket.
        path_prefix: Key prefix in the bucket.
        local_dir: Also keep a copy here when set.
    """

    def __init__(
        self,
        data_dir: Path,
        store: ObjectStore,
        path_prefix: str = "",
        local_dir: Optional[Path] = None,
    ):
        self.data_dir = Path(data_dir)
        self.store = store
        self.path_prefix = path_prefix
        self.local_dir = local_dir

    def __call__(self) -> bool:
        name, archive = create_backup_archive(self.data_dir)
        if self.local_dir is not None:
            self.local_dir.mkdir(parents=True, exist_ok=True)
            (self.local_dir / name).write_bytes(archive)
        ok = self.store.put(self.path_prefix + name, archive, content_type="application/gzip")
        if ok:
            logger.info("Backup %s uploaded", name)
        return ok


class BackupRetryScheduler:
    """Runs a backup operation with a single-timer bounded retry loop.

    At most one retry timer is pending at any time. External triggers
    that arrive while a retry is pending still run the operation, but a
    failure does not schedule a second timer.

    Args:
        operation: Returns True on success. Exceptions count as failure.
        interval: Seconds between retries.
        max_retries: Retries before giving up until the next trigger.
        timer_factory: ``threading.Timer`` compatible factory.
    """

    def __init__(
        self,
        operation: Callable[[], bool],
        interval: float = RETRY_INTERVAL,
        max_retries: int = MAX_RETRIES,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.operation = operation
        self.interval = interval
        self.max_retries = max_retries
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self._retry_count = 0
        self._closed = False
        self._firing = False
        self.last_ok: Optional[bool] = None

    @property
    def retry_count(self) -> int:
        with self._lock:
            return self._retry_count

    @property
    def pending(self) -> bool:
        """True while a retry is scheduled or running."""
        with self._lock:
            return self._timer is not None or self._firing

    def run(self) -> bool:
        """Attempt the backup once and arrange a retry on failure.

        Returns:
            bool: Whether this attempt succeeded.
        """
        try:
            ok = bool(self.operation())
        except Exception as exc:
            logger.error("Backup failed: %s", exc)
            ok = False

        with self._lock:
            self.last_ok = ok
            if ok:
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
                if self._retry_count > 0:
                    logger.info("Backup recovered after %d retries", self._retry_count)
                self._retry_count = 0
                return True

            if self._closed or self._timer is not None:
                return False
            if self._retry_count >= self.max_retries:
                logger.error(
                    "Backup still failing after %d retries, giving up until next trigger",
                    self._retry_count,
                )
                self._retry_count = 0
                return False

            self._schedule()
            logger.warning(
                "Backup failed, retry %d/%d in %ds",
                self._retry_count + 1, self.max_retries, int(self.interval),
            )
            return False

    def shutdown(self) -> None:
        """Cancel any pending retry. No further retries are scheduled."""
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _schedule(self) -> None:
        # Caller holds the lock.
        timer = self._timer_factory(self.interval, lambda: self._fire(timer))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _fire(self, timer) -> None:
        with self._lock:
            if self._closed or self._timer is not timer:
                return
            self._timer = None
            self._retry_count += 1
            self._firing = True
        try:
            self.run()
        finally:
            with self._lock:
                self._firing = False
