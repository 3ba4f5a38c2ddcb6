"""
test_registry.py
----------------
Unit tests for connection <-> user binding, eviction and reconnect restore.
"""

import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, ROOT)

from registry import ConnectionRegistry


def test_connect_without_history_is_unbound():
    reg = ConnectionRegistry()
    assert reg.on_connect("c1", object()) is None
    assert reg.is_live("c1")
    assert reg.user_for("c1") is None
    assert reg.bound_connections() == []


def test_bind_and_resolve():
    reg = ConnectionRegistry()
    h = object()
    reg.on_connect("c1", h)
    reg.bind("c1", "u1")
    assert reg.user_for("c1") == "u1"
    assert reg.resolve_connection("u1") == "c1"
    assert reg.bound_connections() == [("c1", "u1", h)]


# Re-binding a connection to another user frees the old user id
def test_rebind_connection_to_other_user():
    reg = ConnectionRegistry()
    reg.on_connect("c1", object())
    reg.bind("c1", "u1")
    reg.bind("c1", "u2")
    assert reg.user_for("c1") == "u2"
    assert reg.resolve_connection("u1") is None
    assert reg.resolve_connection("u2") == "c1"


# Last bind wins: the older connection of the same user loses its binding
def test_same_user_on_new_connection_evicts_old():
    reg = ConnectionRegistry()
    reg.on_connect("c1", object())
    reg.on_connect("c2", object())
    reg.bind("c1", "u1")
    reg.bind("c2", "u1")
    assert reg.resolve_connection("u1") == "c2"
    assert reg.user_for("c1") is None
    assert [cid for cid, _, _ in reg.bound_connections()] == ["c2"]
    # the evicted session does not come back as u1 on reconnect
    reg.on_disconnect("c1")
    assert reg.on_connect("c1", object()) is None


def test_disconnect_persists_and_reconnect_restores():
    reg = ConnectionRegistry()
    reg.on_connect("c1", object())
    reg.bind("c1", "u1")
    assert reg.on_disconnect("c1") == "u1"
    assert not reg.is_live("c1")
    assert reg.resolve_connection("u1") is None
    assert reg.bound_connections() == []

    h2 = object()
    assert reg.on_connect("c1", h2) == "u1"
    assert reg.resolve_connection("u1") == "c1"
    assert reg.handle_for("c1") is h2


def test_disconnect_unbound_returns_none():
    reg = ConnectionRegistry()
    reg.on_connect("c1", object())
    assert reg.on_disconnect("c1") is None
    assert reg.on_disconnect("never-seen") is None


def test_bound_connections_skips_unbound_and_keeps_connect_order():
    reg = ConnectionRegistry()
    for cid in ("a", "b", "c"):
        reg.on_connect(cid, cid)
    reg.bind("c", "u3")
    reg.bind("a", "u1")
    assert [(cid, uid) for cid, uid, _ in reg.bound_connections()] == [("a", "u1"), ("c", "u3")]
    assert reg.live_count() == 3
