"""Tests for object stores, the CDN purger and the artifact publisher."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests
from botocore.exceptions import ClientError, EndpointConnectionError

from rolepass.registry import Registry
from rolepass.storage import (
    ArtifactPublisher,
    CachePurger,
    LocalObjectStore,
    NullPurger,
    S3ObjectStore,
)


class TestS3ObjectStore:
    """Tests for the boto3-backed store."""

    @patch("rolepass.storage.boto3.client")
    def test_client_config(self, mock_client):
        S3ObjectStore("https://acct.r2.example", "bucket", "key", "secret")
        mock_client.assert_called_once_with(
            "s3",
            region_name="auto",
            endpoint_url="https://acct.r2.example",
            aws_access_key_id="key",
            aws_secret_access_key="secret",
        )

    @patch("rolepass.storage.boto3.client")
    def test_put(self, mock_client):
        store = S3ObjectStore("https://e", "bucket", "k", "s")
        assert store.put("bot/a.bin", "payload", content_type="text/plain") is True
        mock_client.return_value.put_object.assert_called_once_with(
            Bucket="bucket", Key="bot/a.bin", Body=b"payload", ContentType="text/plain"
        )

    @patch("rolepass.storage.boto3.client")
    def test_put_client_error(self, mock_client):
        mock_client.return_value.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "no"}}, "PutObject"
        )
        store = S3ObjectStore("https://e", "bucket", "k", "s")
        assert store.put("a.bin", b"x") is False

    @patch("rolepass.storage.boto3.client")
    def test_put_connection_error(self, mock_client):
        mock_client.return_value.put_object.side_effect = EndpointConnectionError(
            endpoint_url="https://e"
        )
        store = S3ObjectStore("https://e", "bucket", "k", "s")
        assert store.put("a.bin", b"x") is False


class TestLocalObjectStore:
    def test_put_text_and_bytes(self, tmp_path):
        store = LocalObjectStore(tmp_path)
        assert store.put("sub/a.txt", "hello")
        assert store.put("b.bin", b"\x00\x01")
        assert (tmp_path / "sub" / "a.txt").read_text() == "hello"
        assert (tmp_path / "b.bin").read_bytes() == b"\x00\x01"

    def test_refuses_escape(self, tmp_path):
        store = LocalObjectStore(tmp_path / "root")
        assert store.put("../outside.txt", "x") is False
        assert not (tmp_path / "outside.txt").exists()


class TestCachePurger:
    """Tests for the best-effort CDN purge."""

    def _purger(self, response=None, error=None):
        session = MagicMock()
        if error is not None:
            session.post.side_effect = error
        else:
            session.post.return_value = response
        return CachePurger("zone1", "token", session=session), session

    def test_request(self):
        resp = MagicMock(ok=True, status_code=200)
        resp.json.return_value = {"success": True}
        purger, session = self._purger(resp)
        purger.purge(["https://cdn/a.bin"])

        args, kwargs = session.post.call_args
        assert args[0] == "https://api.cloudflare.com/client/v4/zones/zone1/purge_cache"
        assert kwargs["json"] == {"files": ["https://cdn/a.bin"]}
        assert kwargs["headers"]["Authorization"] == "Bearer token"

    def test_network_error_swallowed(self, caplog):
        purger, _ = self._purger(error=requests.ConnectionError("down"))
        purger.purge(["u"])
        assert "Cache purge request failed" in caplog.text

    def test_rejected_swallowed(self, caplog):
        resp = MagicMock(ok=False, status_code=403)
        resp.json.return_value = {"success": False, "errors": [{"code": 10000}]}
        purger, _ = self._purger(resp)
        purger.purge(["u"])
        assert "Cache purge rejected" in caplog.text

    def test_non_json_swallowed(self):
        resp = MagicMock(ok=True, status_code=502)
        resp.json.side_effect = ValueError("no json")
        purger, _ = self._purger(resp)
        purger.purge(["u"])

    @pytest.mark.parametrize("body", [None, [], "ok", 1])
    def test_non_object_body_swallowed(self, body, caplog):
        resp = MagicMock(ok=True, status_code=200)
        resp.json.return_value = body
        purger, _ = self._purger(resp)
        purger.purge(["u"])
        assert "unexpected body" in caplog.text

    def test_null_purger(self):
        NullPurger().purge(["u"])


class TestArtifactPublisher:
    """Tests for per-guild file naming and bookkeeping."""

    @pytest.fixture
    def registry(self, tmp_path):
        return Registry(tmp_path)

    def test_first_publish_records_and_purges(self, registry):
        store = MagicMock()
        store.put.return_value = True
        purger = MagicMock()
        publisher = ArtifactPublisher(store, registry, purger, "https://cdn.example/", "bot1/")

        assert publisher.upload("g1", "Guild", "payload") is True

        file_name = registry.file_name("g1")
        assert file_name.endswith(".bin")
        store.put.assert_called_once_with("bot1/" + file_name, "payload", content_type="text/plain")
        url = "https://cdn.example/bot1/" + file_name
        assert registry.public_url("g1") == url
        purger.purge.assert_called_once_with([url])

    def test_later_publish_reuses_name_without_purge(self, registry):
        store = MagicMock()
        store.put.return_value = True
        purger = MagicMock()
        publisher = ArtifactPublisher(store, registry, purger, "", "")
        publisher.upload("g1", "Guild", "one")
        first = registry.file_name("g1")
        publisher.upload("g1", "Guild Renamed", "two")

        assert registry.file_name("g1") == first
        assert store.put.call_args_list[1].args[0] == first
        purger.purge.assert_called_once()

    def test_failed_upload_records_nothing(self, registry):
        store = MagicMock()
        store.put.return_value = False
        purger = MagicMock()
        publisher = ArtifactPublisher(store, registry, purger, "", "")

        assert publisher.upload("g1", "Guild", "payload") is False
        assert registry.file_name("g1") is None
        purger.purge.assert_not_called()

    def test_name_collision_redrawn(self, registry):
        registry.record_published("other", "Other", "taken.bin", "u")
        store = MagicMock()
        store.put.return_value = True
        publisher = ArtifactPublisher(store, registry, NullPurger(), "", "")

        names = iter(["taken", "fresh"])
        with patch("rolepass.storage.uuid.uuid4", side_effect=lambda: next(names)):
            publisher.upload("g1", "Guild", "payload")
        assert registry.file_name("g1") == "fresh.bin"
