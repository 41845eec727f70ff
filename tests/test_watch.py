"""Tests for the file change watcher."""

from __future__ import annotations

import os

import pytest

from rolepass.events import ChangeFeed
from rolepass.membership import MembershipCache, StaticMembershipSource
from rolepass.registry import Registry
from rolepass.staleness import StalenessTracker
from rolepass.watch import ChangeWatcher

MEMBERSHIP = """\
principal_id: bot
tenants:
  g1:
    name: One
    members:
      bot: [A, B]
      m1: [A]
      m2: [C]
"""


def _bump(path):
    """Advance mtime so the change is seen even on coarse filesystems."""
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))


@pytest.fixture
def setup(tmp_path):
    membership_file = tmp_path / "membership.yaml"
    membership_file.write_text(MEMBERSHIP)
    source = StaticMembershipSource.from_yaml(membership_file)
    registry = Registry(tmp_path)
    registry.set_name("g1", "m1", "Alice")
    members = MembershipCache(source, cooldown=0)
    members.refresh("g1")
    feed = ChangeFeed()
    watcher = ChangeWatcher(feed, registry, members, source=source, membership_file=membership_file)
    watcher.prime(["g1"])
    return watcher, feed, registry, source, membership_file


def _drained(feed) -> dict:
    tracker = StalenessTracker(2)
    feed.drain(tracker)
    return {tid: tracker.is_dirty(tid) for tid in tracker.tracked()}


class TestMembershipFile:
    def test_no_change_posts_nothing(self, setup):
        watcher, feed, *_ = setup
        assert watcher.poll(["g1"]) == 0
        assert feed.pending() == 0

    def test_relevant_change_posts_and_reloads(self, setup):
        watcher, feed, _, source, membership_file = setup
        membership_file.write_text(MEMBERSHIP.replace("m1: [A]", "m1: [A, B]"))
        _bump(membership_file)

        assert watcher.poll(["g1"]) == 1
        assert _drained(feed) == {"g1": True}
        assert [r.name for r in source.fetch_members("g1")["m1"]] == ["A", "B"]

    def test_irrelevant_change_reloads_silently(self, setup):
        watcher, feed, _, source, membership_file = setup
        membership_file.write_text(MEMBERSHIP.replace("m2: [C]", "m2: [D]"))
        _bump(membership_file)

        assert watcher.poll(["g1"]) == 0
        assert [r.name for r in source.fetch_members("g1")["m2"]] == ["D"]

    def test_new_guild_picked_up(self, setup):
        watcher, feed, _, source, membership_file = setup
        membership_file.write_text(MEMBERSHIP + "  g2:\n    name: Two\n    members: {}\n")
        _bump(membership_file)
        watcher.poll(["g1"])
        assert source.tenants() == {"g1": "One", "g2": "Two"}

    def test_broken_yaml_keeps_source(self, setup):
        watcher, feed, _, source, membership_file = setup
        membership_file.write_text("tenants: [unclosed\n")
        _bump(membership_file)
        assert watcher.poll(["g1"]) == 0
        assert source.tenants() == {"g1": "One"}


class TestNamesFile:
    def test_rename_of_role_holder_posts(self, setup):
        watcher, feed, registry, *_ = setup
        registry.set_name("g1", "m1", "Alicia")
        _bump(registry.names_path("g1"))
        assert watcher.poll(["g1"]) == 1
        assert _drained(feed) == {"g1": True}

    def test_name_for_unprivileged_member_ignored(self, setup):
        watcher, feed, registry, *_ = setup
        registry.set_name("g1", "m2", "Bob")
        _bump(registry.names_path("g1"))
        assert watcher.poll(["g1"]) == 0

    def test_removal_of_role_holder_posts(self, setup):
        watcher, feed, registry, *_ = setup
        registry.remove_name("g1", "m1")
        _bump(registry.names_path("g1"))
        assert watcher.poll(["g1"]) == 1

    def test_seen_once(self, setup):
        watcher, feed, registry, *_ = setup
        registry.set_name("g1", "m1", "Alicia")
        _bump(registry.names_path("g1"))
        watcher.poll(["g1"])
        assert watcher.poll(["g1"]) == 0


class TestWithoutFile:
    def test_registry_only(self, tmp_path):
        registry = Registry(tmp_path)
        source = StaticMembershipSource("bot", {"g1": {"name": "One", "members": {"bot": ["A"], "m1": ["A"]}}})
        members = MembershipCache(source, cooldown=0)
        members.refresh("g1")
        feed = ChangeFeed()
        watcher = ChangeWatcher(feed, registry, members)

        registry.set_name("g1", "m1", "Alice")
        assert watcher.poll(["g1"]) == 1
