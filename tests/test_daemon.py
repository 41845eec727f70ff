"""Tests for the rolepass daemon and runtime wiring."""

from __future__ import annotations

import json
import os
import urllib.request
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from rolepass.config import load_settings
from rolepass.daemon import DaemonService, DaemonState, is_running, read_pid
from rolepass.models import CycleOutcome, CycleResult
from rolepass.payload import split_publishable
from rolepass.runtime import Runtime
from rolepass.signer import SigningKeyError

MEMBERSHIP = """\
principal_id: bot
tenants:
  g1:
    name: Guild One
    members:
      bot: [A, B]
      m1: [A]
      m2: [B]
"""


@pytest.fixture
def settings(tmp_rolepass_home):
    (tmp_rolepass_home / "config" / "membership.yaml").write_text(MEMBERSHIP)
    (tmp_rolepass_home / "config" / "config.yaml").write_text("api_port: 0\n")
    return load_settings(tmp_rolepass_home, environ={})


@pytest.fixture
def runtime(settings):
    rt = Runtime(settings)
    rt.registry.set_name("g1", "m1", "X")
    rt.registry.set_name("g1", "m2", "Y")
    return rt


class TestDaemonState:
    """Tests for thread-safe DaemonState."""

    def test_initial_snapshot(self):
        snap = DaemonState().snapshot()
        assert snap["running"] is False
        assert snap["ticks"] == 0
        assert snap["uptime_seconds"] == 0
        assert snap["pid"] == os.getpid()

    def test_record_tick(self):
        state = DaemonState()
        state.record_tick([
            CycleResult(tenant_id="a", outcome=CycleOutcome.PUBLISHED),
            CycleResult(tenant_id="b", outcome=CycleOutcome.PUBLISHED_FILLER),
            CycleResult(tenant_id="c", outcome=CycleOutcome.UPLOAD_FAILED),
            CycleResult(tenant_id="d", outcome=CycleOutcome.SKIPPED_NOT_DUE),
        ])
        snap = state.snapshot()
        assert snap["ticks"] == 1
        assert snap["published"] == 2
        assert snap["upload_failures"] == 1
        assert snap["last_tick"] is not None

    def test_record_backup(self):
        state = DaemonState()
        state.record_backup(True)
        state.record_backup(False)
        snap = state.snapshot()
        assert (snap["backups_ok"], snap["backups_failed"]) == (1, 1)

    def test_errors_capped(self):
        state = DaemonState()
        for i in range(60):
            state.record_error(f"err {i}")
        assert len(state.errors) == 50
        assert state.snapshot()["recent_errors"][-1].endswith("err 59")


class TestRuntime:
    """Tests for component wiring."""

    def test_missing_keys_fatal(self, settings):
        import shutil

        shutil.rmtree(settings.key_dir)
        with pytest.raises(SigningKeyError):
            Runtime(settings)

    def test_local_stores_by_default(self, runtime, settings):
        runtime.coordinator.track_tenants(runtime.source.tenants())
        results = runtime.publish_once()
        assert [r.outcome for r in results] == [CycleOutcome.PUBLISHED]

        file_name = runtime.registry.file_name("g1")
        payload = (settings.home / "public" / file_name).read_text()
        artifact, _ = split_publishable(payload)
        assert len(artifact) == 137

    def test_publish_once_single_guild_forced(self, runtime):
        runtime.coordinator.track_tenants(runtime.source.tenants())
        runtime.publish_once()
        results = runtime.publish_once(tenant_id="g1", force=True)
        assert results[0].outcome == CycleOutcome.PUBLISHED

    def test_publish_once_unknown_guild(self, runtime, settings):
        runtime.coordinator.track_tenants(runtime.source.tenants())
        assert runtime.publish_once(tenant_id="nope", force=True) == []
        assert not runtime.tracker.is_tracked("nope")
        assert runtime.registry.file_name("nope") is None
        assert not list((settings.home / "public").glob("*.bin"))

    def test_refresh_limit_from_settings(self, runtime):
        assert runtime.tracker.limit == 39

    def test_missing_membership_file(self, settings):
        (settings.home / "config" / "membership.yaml").unlink()
        assert Runtime(settings).source.tenants() == {}


class TestDaemonTick:
    """Tests for one publish pass driven by the daemon."""

    def test_first_tick_tracks_and_publishes(self, settings, runtime):
        svc = DaemonService(settings, runtime=runtime)
        results = svc.tick()
        assert [r.outcome for r in results] == [CycleOutcome.PUBLISHED]
        assert svc.state.snapshot()["published"] == 1

    def test_second_tick_not_due(self, settings, runtime):
        svc = DaemonService(settings, runtime=runtime)
        svc.tick()
        assert [r.outcome for r in svc.tick()] == [CycleOutcome.SKIPPED_NOT_DUE]

    def test_departed_guild_forgotten(self, settings, runtime):
        runtime.source.set_tenant("g2", "Guild Two", {"bot": ["A"]})
        svc = DaemonService(settings, runtime=runtime)
        svc.tick()
        runtime.source.remove_tenant("g1")
        assert [r.tenant_id for r in svc.tick()] == ["g2"]
        assert runtime.tracker.tracked() == ["g2"]
        assert runtime.registry.registered_members("g1") == {}

    def test_last_guild_leaving_keeps_registry(self, settings, runtime):
        svc = DaemonService(settings, runtime=runtime)
        svc.tick()
        runtime.source.remove_tenant("g1")
        assert svc.tick() == []
        assert runtime.tracker.tracked() == []
        assert runtime.registry.registered_members("g1") == {"m1": "X", "m2": "Y"}

    def test_name_change_republishes(self, settings, runtime):
        svc = DaemonService(settings, runtime=runtime)
        svc.tick()
        runtime.registry.set_name("g1", "m1", "Renamed")
        path = runtime.registry.names_path("g1")
        st = path.stat()
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))
        assert [r.outcome for r in svc.tick()] == [CycleOutcome.PUBLISHED]


class TestDaemonLifecycle:
    """Start/stop with the real threads and API server."""

    def test_start_serve_stop(self, settings, runtime):
        svc = DaemonService(settings, runtime=runtime)
        svc.start(install_signals=False)
        try:
            assert read_pid(settings.home) == os.getpid()
            assert is_running(settings.home)
            port = svc._server.server_port

            with urllib.request.urlopen(f"http://127.0.0.1:{port}/status", timeout=3) as resp:
                status = json.loads(resp.read())
            assert status["running"] is True
            assert status["backups_ok"] == 1

            with urllib.request.urlopen(f"http://127.0.0.1:{port}/public-key", timeout=3) as resp:
                assert resp.read().decode() == runtime.signer.public_key_pem()
        finally:
            svc.stop()

        assert not (settings.home / "daemon.pid").exists()
        assert list((settings.home / "backups").glob("backup-*.tar.gz"))
        assert svc.log_file.exists()

    def test_stop_shuts_down_backup_retries(self, settings):
        runtime = MagicMock()
        svc = DaemonService(settings, runtime=runtime)
        svc.stop()
        runtime.backup_scheduler.shutdown.assert_called_once()

    def test_failed_startup_backup_recorded(self, settings, runtime):
        runtime.backup_scheduler.operation = MagicMock(return_value=False)
        svc = DaemonService(settings, runtime=runtime)
        svc.start(install_signals=False, serve_api=False)
        try:
            assert svc.state.snapshot()["backups_failed"] == 1
            assert runtime.backup_scheduler.pending
        finally:
            svc.stop()
        assert not runtime.backup_scheduler.pending


class TestPid:
    def test_no_pid_file(self, tmp_path):
        assert read_pid(tmp_path) is None

    def test_stale_pid_removed(self, tmp_path: Path):
        (tmp_path / "daemon.pid").write_text("not-a-pid")
        assert read_pid(tmp_path) is None
        assert not (tmp_path / "daemon.pid").exists()
