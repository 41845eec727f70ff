"""Tests for the rolepass command line."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from rolepass.cli import main

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
def runner(monkeypatch):
    for var in ("ROLEPASS_API_PORT", "ROLEPASS_R2_VRC_ENDPOINT_URL", "ROLEPASS_R2_BACKUP_ENDPOINT_URL"):
        monkeypatch.delenv(var, raising=False)
    return CliRunner()


@pytest.fixture
def home(tmp_rolepass_home):
    (tmp_rolepass_home / "config" / "membership.yaml").write_text(MEMBERSHIP)
    return tmp_rolepass_home


def _publish(runner, home):
    for member_id, name in (("m1", "X"), ("m2", "Y")):
        runner.invoke(main, ["name", "set", "g1", member_id, name, "--home", str(home)])
    return runner.invoke(main, ["publish", "--home", str(home)])


class TestHelp:
    def test_commands_listed(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("init", "daemon", "publish", "backup", "key", "name", "inspect"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "rolepass" in result.output


class TestInit:
    def test_creates_home(self, runner, tmp_path):
        home = tmp_path / "fresh"
        result = runner.invoke(main, ["init", "--home", str(home)])
        assert result.exit_code == 0, result.output
        assert (home / "config" / "config.yaml").exists()
        assert (home / "keys" / "private_key.pem").exists()
        assert (home / "keys" / "public_key.pem").exists()

        again = runner.invoke(main, ["init", "--home", str(home)])
        assert again.exit_code == 0
        assert "kept existing" in again.output


class TestKey:
    def test_public(self, runner, home):
        result = runner.invoke(main, ["key", "public", "--home", str(home)])
        assert result.exit_code == 0
        assert result.output.strip() == (home / "keys" / "public_key.pem").read_text().strip()

    def test_missing_key(self, runner, home):
        (home / "keys" / "private_key.pem").unlink()
        result = runner.invoke(main, ["key", "public", "--home", str(home)])
        assert result.exit_code == 1

    def test_no_home(self, runner, tmp_path):
        result = runner.invoke(main, ["key", "public", "--home", str(tmp_path / "nope")])
        assert result.exit_code == 1
        assert "rolepass init" in result.output


class TestName:
    def test_set_list_remove(self, runner, home):
        result = runner.invoke(main, ["name", "set", "g1", "m1", "Alice", "--home", str(home)])
        assert result.exit_code == 0

        listed = runner.invoke(main, ["name", "list", "g1", "--home", str(home), "--json-out"])
        assert json.loads(listed.output) == {"m1": "Alice"}

        unchanged = runner.invoke(main, ["name", "set", "g1", "m1", "Alice", "--home", str(home)])
        assert "unchanged" in unchanged.output

        removed = runner.invoke(main, ["name", "remove", "g1", "m1", "--home", str(home)])
        assert removed.exit_code == 0
        listed = runner.invoke(main, ["name", "list", "g1", "--home", str(home), "--json-out"])
        assert json.loads(listed.output) == {}


class TestPublishAndInspect:
    def test_publish(self, runner, home):
        result = _publish(runner, home)
        assert result.exit_code == 0, result.output
        assert "g1" in result.output
        assert len(list((home / "public").glob("*.bin"))) == 1

    def test_publish_unknown_guild(self, runner, home):
        result = runner.invoke(main, ["publish", "--home", str(home), "--tenant", "nope"])
        assert result.exit_code == 1
        assert "Unknown guild" in result.output
        assert not list((home / "public").glob("*.bin"))

    def test_inspect_valid(self, runner, home):
        _publish(runner, home)
        (payload_file,) = (home / "public").glob("*.bin")
        result = runner.invoke(main, ["inspect", str(payload_file), "--home", str(home)])
        assert result.exit_code == 0, result.output
        assert "Payload OK" in result.output
        assert "137" in result.output

    def test_inspect_filler(self, runner, home):
        result = runner.invoke(main, ["publish", "--home", str(home)])
        assert result.exit_code == 0
        (payload_file,) = (home / "public").glob("*.bin")
        result = runner.invoke(main, ["inspect", str(payload_file), "--home", str(home)])
        assert result.exit_code == 0
        assert "filler" in result.output

    def test_inspect_wrong_key(self, runner, home, other_key_dir):
        _publish(runner, home)
        (payload_file,) = (home / "public").glob("*.bin")
        result = runner.invoke(main, [
            "inspect", str(payload_file), "--public-key", str(other_key_dir / "public_key.pem"),
        ])
        assert result.exit_code == 1
        assert "INVALID" in result.output

    def test_inspect_garbage(self, runner, home, tmp_path):
        bad = tmp_path / "bad.bin"
        bad.write_text("no delimiter here")
        result = runner.invoke(main, ["inspect", str(bad), "--home", str(home)])
        assert result.exit_code == 1


class TestBackupAndDaemon:
    def test_backup(self, runner, home):
        result = runner.invoke(main, ["backup", "--home", str(home)])
        assert result.exit_code == 0, result.output
        assert list((home / "backups").glob("backup-*.tar.gz"))

    def test_daemon_status_not_running(self, runner, home):
        result = runner.invoke(main, ["daemon", "status", "--home", str(home), "--json-out"])
        assert result.exit_code == 0
        assert json.loads(result.output) == {"running": False}

    def test_daemon_stop_not_running(self, runner, home):
        result = runner.invoke(main, ["daemon", "stop", "--home", str(home)])
        assert result.exit_code == 0
        assert "not running" in result.output
