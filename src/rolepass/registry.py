"""
Registered names and published-file records, kept as JSON on disk.

Layout under ``<home>/registry``:
    names/<guild_id>.json    member id -> {name, updated_at}
    published.json           guild id -> {guild_name, file_name, url,
                                          created_at, updated_at}

The whole directory is what the backup scheduler archives.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger("rolepass.registry")

REGISTRY_DIR = "registry"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Registry:
    """JSON-file registry shared by the publisher and the name commands.

    Args:
        home: RolePass home directory.
    """

    def __init__(self, home: Path):
        self.data_dir = Path(home).expanduser() / REGISTRY_DIR
        self._names_dir = self.data_dir / "names"
        self._published_file = self.data_dir / "published.json"
        self._names_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # --- Registered names ---

    def registered_members(self, tenant_id: str) -> dict[str, str]:
        """Member id -> registered name for one guild."""
        with self._lock:
            data = self._read(self.names_path(tenant_id))
        return {member_id: entry["name"] for member_id, entry in data.items()}

    def registered_name(self, tenant_id: str, member_id: str) -> Optional[str]:
        return self.registered_members(tenant_id).get(member_id)

    def is_registered(self, tenant_id: str, member_id: str) -> bool:
        return self.registered_name(tenant_id, member_id) is not None

    def set_name(self, tenant_id: str, member_id: str, name: str) -> bool:
        """Register or change a member's name.

        Returns:
            bool: False if the name was already registered unchanged.
        """
        with self._lock:
            path = self.names_path(tenant_id)
            data = self._read(path)
            current = data.get(member_id)
            if current and current["name"] == name:
                return False
            data[member_id] = {"name": name, "updated_at": _now()}
            self._write(path, data)
        logger.info("Registered name for %s in %s", member_id, tenant_id)
        return True

    def remove_name(self, tenant_id: str, member_id: str) -> bool:
        with self._lock:
            path = self.names_path(tenant_id)
            data = self._read(path)
            if data.pop(member_id, None) is None:
                return False
            self._write(path, data)
        logger.info("Removed name for %s in %s", member_id, tenant_id)
        return True

    # --- Published files ---

    def file_name(self, tenant_id: str) -> Optional[str]:
        with self._lock:
            entry = self._read(self._published_file).get(tenant_id)
        return entry["file_name"] if entry else None

    def public_url(self, tenant_id: str) -> Optional[str]:
        with self._lock:
            entry = self._read(self._published_file).get(tenant_id)
        return entry["url"] if entry else None

    def file_name_exists(self, file_name: str) -> bool:
        with self._lock:
            published = self._read(self._published_file)
        return any(e["file_name"] == file_name for e in published.values())

    def record_published(self, tenant_id: str, tenant_name: str, file_name: str, url: str) -> None:
        """Remember a guild's file after its first successful upload."""
        now = _now()
        with self._lock:
            published = self._read(self._published_file)
            published[tenant_id] = {
                "guild_name": tenant_name,
                "file_name": file_name,
                "url": url,
                "created_at": now,
                "updated_at": now,
            }
            self._write(self._published_file, published)
        logger.info("Guild %s (%s) published new file %s", tenant_name, tenant_id, url)

    def touch_published(self, tenant_id: str, tenant_name: str) -> None:
        with self._lock:
            published = self._read(self._published_file)
            entry = published.get(tenant_id)
            if entry is None:
                return
            entry["guild_name"] = tenant_name
            entry["updated_at"] = _now()
            self._write(self._published_file, published)

    # --- Maintenance ---

    def cleanup(self, current_tenants: Iterable[str]) -> list[str]:
        """Drop everything stored for guilds the bot is no longer in.

        An empty guild list is treated as "nothing known yet" and leaves
        the registry untouched.

        Returns:
            list[str]: Guild ids that were removed.
        """
        keep = set(current_tenants)
        if not keep:
            logger.warning("Registry cleanup skipped: no current guilds")
            return []
        removed: set[str] = set()
        with self._lock:
            published = self._read(self._published_file)
            for tenant_id in [t for t in published if t not in keep]:
                del published[tenant_id]
                removed.add(tenant_id)
            self._write(self._published_file, published)

            for path in self._names_dir.glob("*.json"):
                if path.stem not in keep:
                    path.unlink()
                    removed.add(path.stem)

        if removed:
            logger.info("Registry cleanup removed %d guild(s)", len(removed))
        return sorted(removed)

    def names_path(self, tenant_id: str) -> Path:
        """Path of the names file for a guild, rejecting ids that escape the registry."""
        if not tenant_id or "/" in tenant_id or tenant_id.startswith("."):
            raise ValueError(f"Invalid guild id: {tenant_id!r}")
        return self._names_dir / f"{tenant_id}.json"

    # --- Private helpers ---

    def _read(self, path: Path) -> dict:
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Corrupt registry file %s: %s", path, exc)
            return {}

    def _write(self, path: Path, data: dict) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, path)
