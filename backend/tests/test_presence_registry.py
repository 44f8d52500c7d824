"""
Presence registry: bidirectional mapping, overwrite semantics and fan-out.
"""
from __future__ import annotations

import pytest

from backend.identity_access.domain import Identity
from backend.messaging.presence import PresenceRegistry
from backend.tests.utils.fake_connection import FakeConnection


ALICE = Identity(id="1", name="Alice", role="student")
BOB = Identity(id="2", name="Bob", role="teacher")
CAROL = Identity(id="3", name="Carol", role="admin")


def test_join_binds_both_directions():
    reg = PresenceRegistry()
    c1 = FakeConnection("c1")
    assert reg.join(c1, ALICE) is None
    assert reg.lookup_connection("1") == "c1"
    assert reg.lookup_identity("c1") == ALICE
    assert reg.channel("c1") is c1
    assert reg.channel_for_user("1") is c1
    assert reg.is_online("1")
    assert len(reg) == 1


def test_rejoin_from_new_connection_replaces_entry():
    reg = PresenceRegistry()
    reg.join(FakeConnection("c1"), ALICE)
    reg.join(FakeConnection("c2"), ALICE)
    assert reg.lookup_connection("1") == "c2"
    # Stale socket is no longer joined and has no channel.
    assert reg.lookup_identity("c1") is None
    assert reg.channel("c1") is None
    assert len(reg) == 1


def test_join_returns_replaced_connection_id():
    reg = PresenceRegistry()
    reg.join(FakeConnection("c1"), ALICE)
    assert reg.join(FakeConnection("c2"), ALICE) == "c1"
    # Re-joining on the same socket is not a replacement.
    assert reg.join(reg.channel("c2"), ALICE) is None


def test_stale_remove_does_not_evict_newer_connection():
    reg = PresenceRegistry()
    reg.join(FakeConnection("c1"), ALICE)
    reg.join(FakeConnection("c2"), ALICE)
    assert reg.remove("c1") is None
    assert reg.lookup_connection("1") == "c2"
    assert reg.remove("c2") == ALICE
    assert not reg.is_online("1")


def test_remove_is_idempotent():
    reg = PresenceRegistry()
    reg.join(FakeConnection("c1"), ALICE)
    assert reg.remove("c1") == ALICE
    assert reg.remove("c1") is None
    assert reg.remove("never-seen") is None
    assert len(reg) == 0


def test_same_socket_joining_as_other_user_drops_old_binding():
    reg = PresenceRegistry()
    c1 = FakeConnection("c1")
    reg.join(c1, ALICE)
    reg.join(c1, BOB)
    assert not reg.is_online("1")
    assert reg.lookup_connection("2") == "c1"
    assert reg.lookup_identity("c1") == BOB


def test_list_online_follows_latest_join_order():
    reg = PresenceRegistry()
    reg.join(FakeConnection("c1"), ALICE)
    reg.join(FakeConnection("c2"), BOB)
    reg.join(FakeConnection("c3"), CAROL)
    assert [i.id for i in reg.list_online()] == ["1", "2", "3"]
    reg.join(FakeConnection("c4"), ALICE)
    assert [i.id for i in reg.list_online()] == ["2", "3", "1"]


@pytest.mark.anyio
async def test_notify_others_skips_excluded_and_survives_failures():
    reg = PresenceRegistry()
    c1, c2 = FakeConnection("c1"), FakeConnection("c2")
    c3 = FakeConnection("c3", explode=True)
    c4 = FakeConnection("c4", alive=False)
    reg.join(c1, ALICE)
    reg.join(c2, BOB)
    reg.join(c3, CAROL)
    reg.join(c4, Identity(id="4", name="Dan", role="teacher"))

    delivered = await reg.notify_others("c1", "userOnline", {"userId": "1"})

    assert delivered == 1
    assert c1.events == []
    assert c2.events == [("userOnline", {"userId": "1"})]


@pytest.mark.anyio
async def test_notify_others_with_nobody_else_is_noop():
    reg = PresenceRegistry()
    reg.join(FakeConnection("c1"), ALICE)
    assert await reg.notify_others("c1", "userOnline", {}) == 0


def test_clear_forgets_everything():
    reg = PresenceRegistry()
    reg.join(FakeConnection("c1"), ALICE)
    reg.clear()
    assert len(reg) == 0
    assert reg.list_online() == []
    assert reg.channel("c1") is None
