"""
test_stores.py
--------------
Unit tests for the in-memory log, delivery cursors and credential store.
"""

import os
import sys
import threading

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, ROOT)

from stores import DEFAULT_COLOR, CredentialStore, DeliveryCursors, MessageStore


# -------------------
# MessageStore
# -------------------

def test_append_assigns_unique_ids_and_keeps_order():
    store = MessageStore()
    ids = []
    for i in range(5):
        msg, length = store.append("u1", "alice", f"c{i}", 1000 + i)
        assert length == i + 1
        ids.append(msg.id)
    assert len(set(ids)) == 5
    assert [m.cipher_text for m in store.slice(0)] == [f"c{i}" for i in range(5)]
    assert len(store) == 5


def test_lookup_by_id():
    store = MessageStore()
    msg, _ = store.append("u1", "alice", "xyz", 42)
    found = store.lookup_by_id(msg.id)
    assert found == msg
    assert found.owner_id == "u1" and found.owner_name == "alice" and found.timestamp == 42
    assert store.lookup_by_id("nope") is None


def test_index_after_known_and_unknown():
    store = MessageStore()
    first, _ = store.append("u1", "a", "1", 1)
    second, _ = store.append("u1", "a", "2", 2)
    assert store.index_after(first.id) == 1
    assert store.index_after(second.id) == 2
    assert store.index_after("missing") == 0


def test_slice_is_a_snapshot():
    store = MessageStore()
    store.append("u1", "a", "1", 1)
    snap = store.slice(0)
    store.append("u1", "a", "2", 2)
    assert len(snap) == 1
    assert isinstance(snap, tuple)
    assert [m.cipher_text for m in store.slice(1)] == ["2"]
    assert store.slice(5) == ()


def test_concurrent_appends_from_threads_stay_consistent():
    store = MessageStore()

    def writer(tag):
        for i in range(200):
            store.append(tag, tag, f"{tag}-{i}", i)

    threads = [threading.Thread(target=writer, args=(f"t{n}",)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    log = store.slice(0)
    assert len(log) == 800
    assert len({m.id for m in log}) == 800
    # every id indexes back to its own position
    for pos, m in enumerate(log):
        assert store.index_after(m.id) == pos + 1
    # per-writer order preserved
    for n in range(4):
        mine = [m.cipher_text for m in log if m.owner_id == f"t{n}"]
        assert mine == [f"t{n}-{i}" for i in range(200)]


# -------------------
# DeliveryCursors
# -------------------

def test_cursor_defaults_to_zero():
    cursors = DeliveryCursors()
    assert cursors.get("new-user") == 0


def test_cursor_never_moves_backwards():
    cursors = DeliveryCursors()
    seen = []
    for pos in (3, 1, 5, 5, 2, 8):
        seen.append(cursors.advance("u1", pos))
    assert seen == [3, 3, 5, 5, 5, 8]
    assert cursors.get("u1") == 8
    assert cursors.snapshot() == {"u1": 8}


# -------------------
# CredentialStore
# -------------------

def test_secret_overwrite_and_empty_secret():
    creds = CredentialStore()
    assert creds.get_secret("u1") is None
    assert not creds.has_secret("u1")
    creds.set_secret("u1", "1111")
    creds.set_secret("u1", "2222")
    assert creds.get_secret("u1") == "2222"
    creds.set_secret("u2", "")
    assert creds.has_secret("u2")
    assert creds.get_secret("u2") == ""


def test_color_default_and_overwrite():
    creds = CredentialStore()
    assert creds.get_color("u1") == DEFAULT_COLOR == "black"
    creds.set_color("u1", "red")
    assert creds.get_color("u1") == "red"
    assert CredentialStore(default_color="gray").get_color("x") == "gray"
