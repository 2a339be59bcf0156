import time
from datetime import timedelta

import pytest

from conduit.dht import SeederInfo, SeederRegistry, discover_seeders

HASH_A = bytes([0xAA]) * 32
HASH_B = bytes([0xBB]) * 32


def test_announce_and_withdraw_local():
    reg = SeederRegistry()
    reg.announce_local(HASH_A, "addr-a")
    assert reg.local_addr(HASH_A) == "addr-a"
    assert reg.local_addr(HASH_B) is None
    reg.withdraw_local(HASH_A)
    assert reg.local_addr(HASH_A) is None


def test_withdraw_unknown_is_noop():
    reg = SeederRegistry()
    reg.announce_local(HASH_A, "addr-a")
    reg.withdraw_local(HASH_B)
    assert reg.local_addr(HASH_A) == "addr-a"


def test_add_and_get_seeders_in_order():
    reg = SeederRegistry()
    reg.add_remote_seeder(HASH_A, SeederInfo("n1", "a1", 5))
    reg.add_remote_seeder(HASH_A, SeederInfo("n2", "a2", 7))
    seeders = reg.get_seeders(HASH_A)
    assert [s.node_id for s in seeders] == ["n1", "n2"]
    assert reg.get_seeders(HASH_B) == []


def test_same_node_is_updated_not_duplicated():
    reg = SeederRegistry()
    reg.add_remote_seeder(HASH_A, SeederInfo("n1", "old", 5, last_seen=1.0))
    reg.add_remote_seeder(HASH_A, SeederInfo("n1", "new", 9, last_seen=2.0))
    seeders = reg.get_seeders(HASH_A)
    assert len(seeders) == 1
    assert seeders[0].addr == "new"
    assert seeders[0].price_sats == 9
    assert seeders[0].last_seen == 2.0


def test_get_seeders_returns_copies():
    reg = SeederRegistry()
    reg.add_remote_seeder(HASH_A, SeederInfo("n1", "a1", 5))
    reg.get_seeders(HASH_A)[0].addr = "tampered"
    assert reg.get_seeders(HASH_A)[0].addr == "a1"


def test_prune_stale_removes_old_and_empty_entries():
    reg = SeederRegistry()
    now = time.monotonic()
    reg.add_remote_seeder(HASH_A, SeederInfo("old", "a", 1, last_seen=now - 100))
    reg.add_remote_seeder(HASH_A, SeederInfo("fresh", "b", 1, last_seen=now))
    reg.add_remote_seeder(HASH_B, SeederInfo("old2", "c", 1, last_seen=now - 100))
    reg.prune_stale(10)
    assert [s.node_id for s in reg.get_seeders(HASH_A)] == ["fresh"]
    assert reg.get_seeders(HASH_B) == []


def test_prune_stale_accepts_timedelta():
    reg = SeederRegistry()
    reg.add_remote_seeder(HASH_A, SeederInfo("old", "a", 1, last_seen=time.monotonic() - 100))
    reg.prune_stale(timedelta(seconds=10))
    assert reg.get_seeders(HASH_A) == []


def test_discover_seeders_reads_registry():
    reg = SeederRegistry()
    assert discover_seeders(HASH_A, reg) == []
    reg.add_remote_seeder(HASH_A, SeederInfo("n1", "a1", 3))
    found = discover_seeders(HASH_A, reg)
    assert [s.node_id for s in found] == ["n1"]


def test_hash_length_is_checked():
    reg = SeederRegistry()
    with pytest.raises(ValueError):
        reg.announce_local(b"short", "addr")
    with pytest.raises(ValueError):
        reg.get_seeders(bytes(33))