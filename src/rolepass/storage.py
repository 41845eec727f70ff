"""
Object storage -- where artifacts and backups land.

Artifacts go to a public S3-compatible bucket (Cloudflare R2 in
production) behind a CDN; backups go to a private bucket. Uploads never
raise: a failed put is logged and reported as False so the caller can
re-queue. Cache purges are best-effort.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Optional, Protocol, Union

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from .registry import Registry

logger = logging.getLogger("rolepass.storage")

PURGE_API = "https://api.cloudflare.com/client/v4/zones/{zone_id}/purge_cache"

Body = Union[bytes, str]


class ObjectStore(Protocol):
    """Minimal put-only object store."""

    def put(self, key: str, body: Body, content_type: Optional[str] = None) -> bool:
        """Store ``body`` under ``key``. Returns True on success."""


class S3ObjectStore:
    """S3-compatible bucket via boto3.

    Args:
        endpoint_url: Account endpoint, e.g. https://<account>.r2.cloudflarestorage.com
        bucket: Bucket name.
        access_key_id: Access key.
        secret_key: Secret access key.
        region: Signing region; R2 uses "auto".
    """

    def __init__(
        self,
        endpoint_url: str,
        bucket: str,
        access_key_id: str,
        secret_key: str,
        region: str = "auto",
    ):
        self.bucket = bucket
        self._client = boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_key,
        )

    def put(self, key: str, body: Body, content_type: Optional[str] = None) -> bool:
        if isinstance(body, str):
            body = body.encode("utf-8")
        kwargs = {"Bucket": self.bucket, "Key": key, "Body": body}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self._client.put_object(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Upload of %s to bucket %s failed: %s", key, self.bucket, exc)
            return False
        return True


class LocalObjectStore:
    """Plain filesystem store. For single-host setups, NAS mounts and tests."""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    def put(self, key: str, body: Body, content_type: Optional[str] = None) -> bool:
        target = (self.root / key).resolve()
        if not target.is_relative_to(self.root.resolve()):
            logger.warning("Refusing key outside store root: %s", key)
            return False
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(body, str):
                target.write_text(body, encoding="utf-8")
            else:
                target.write_bytes(body)
        except OSError as exc:
            logger.warning("Local store write of %s failed: %s", key, exc)
            return False
        return True


class NullPurger:
    """Used when no CDN is configured."""

    def purge(self, urls: list[str]) -> None:
        logger.debug("No CDN configured, skipping purge of %d URL(s)", len(urls))


class CachePurger:
    """Cloudflare cache purge by URL.

    Args:
        zone_id: CDN zone id.
        api_key: API token with cache purge permission.
        session: requests session (injectable for tests).
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        zone_id: str,
        api_key: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        self.url = PURGE_API.format(zone_id=zone_id)
        self._api_key = api_key
        self._session = session or requests.Session()
        self._timeout = timeout

    def purge(self, urls: list[str]) -> None:
        """Ask the CDN to drop cached copies. Never raises."""
        try:
            resp = self._session.post(
                self.url,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json={"files": urls},
                timeout=self._timeout,
            )
            result = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Cache purge request failed: %s", exc)
            return

        if not isinstance(result, dict):
            logger.warning("Cache purge returned unexpected body (%s): %r", resp.status_code, result)
            return
        if not resp.ok or not result.get("success"):
            logger.warning("Cache purge rejected (%s): %s", resp.status_code, result.get("errors"))
            return
        logger.info("Purged %d URL(s) from CDN cache", len(urls))


class ArtifactPublisher:
    """Uploads a guild's payload under its stable file name.

    Args:
        store: Public bucket.
        registry: Records which file belongs to which guild.
        purger: CDN purger, or NullPurger.
        base_url: Public URL prefix of the bucket.
        path_prefix: Key prefix separating this bot's files in the bucket.
    """

    def __init__(
        self,
        store: ObjectStore,
        registry: Registry,
        purger,
        base_url: str,
        path_prefix: str = "",
    ):
        self.store = store
        self.registry = registry
        self.purger = purger
        self.base_url = base_url
        self.path_prefix = path_prefix

    def upload(self, tenant_id: str, tenant_name: str, content: str) -> bool:
        """Publish ``content`` for a guild.

        Returns:
            bool: False if the upload failed; nothing is recorded then.
        """
        file_name = self.registry.file_name(tenant_id)
        new_file = file_name is None
        if new_file:
            file_name = self._new_file_name()

        key = self.path_prefix + file_name
        url = self.base_url + key
        if not self.store.put(key, content, content_type="text/plain"):
            return False

        if new_file:
            self.registry.record_published(tenant_id, tenant_name, file_name, url)
            self.purger.purge([url])
        else:
            self.registry.touch_published(tenant_id, tenant_name)
        return True

    def _new_file_name(self) -> str:
        while True:
            candidate = f"{uuid.uuid4()}.bin"
            if not self.registry.file_name_exists(candidate):
                return candidate
