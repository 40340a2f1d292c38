"""
Tests for boardlink.peers module.
"""

import pytest

from boardlink.config import BROADCAST_ID, ETH_BROADCAST_MAC
from boardlink.peers import PeerEntry, PeerTable, UpsertResult


class TestPeerEntry:
    """Tests for PeerEntry."""

    def test_age(self):
        """Test age is measured from last_seen."""
        entry = PeerEntry(node_id="a", address="aa:aa:aa:aa:aa:aa", last_seen=1000)
        assert entry.age_ms(now=3500) == 2500
        assert entry.active

    def test_age_never_negative(self):
        """Test a clock behind last_seen reports zero age."""
        entry = PeerEntry(node_id="a", address="x", last_seen=1000)
        assert entry.age_ms(now=500) == 0


class TestPeerTable:
    """Tests for PeerTable."""

    def test_insert_and_lookup(self):
        """Test inserting a new board."""
        table = PeerTable(capacity=4)

        result = table.upsert("a", "aa:aa:aa:aa:aa:aa", now=0)

        assert result is UpsertResult.INSERTED
        assert table.lookup_address("a") == "aa:aa:aa:aa:aa:aa"
        assert "a" in table
        assert len(table) == 1

    def test_refresh_updates_address_and_time(self):
        """Test a re-sighting refreshes the entry."""
        table = PeerTable(capacity=4)
        table.upsert("a", "aa:aa:aa:aa:aa:aa", now=0)

        result = table.upsert("a", "bb:bb:bb:bb:bb:bb", now=50)

        assert result is UpsertResult.REFRESHED
        assert table.lookup_address("a") == "bb:bb:bb:bb:bb:bb"
        assert table.get("a").last_seen == 50
        assert len(table) == 1

    def test_eviction_of_oldest(self):
        """Test the entry with the oldest last_seen is evicted when full."""
        table = PeerTable(capacity=2)
        table.upsert("A", "addr-a", now=0)
        table.upsert("B", "addr-b", now=10)

        result = table.upsert("C", "addr-c", now=20)

        assert result is UpsertResult.EVICTED_AND_INSERTED
        assert table.lookup_address("A") is None
        assert table.lookup_address("B") == "addr-b"
        assert table.lookup_address("C") == "addr-c"
        assert len(table) == 2

    def test_eviction_respects_refresh(self):
        """Test that refreshing an old entry protects it from eviction."""
        table = PeerTable(capacity=2)
        table.upsert("A", "addr-a", now=0)
        table.upsert("B", "addr-b", now=10)
        table.upsert("A", "addr-a", now=15)

        table.upsert("C", "addr-c", now=20)

        assert "A" in table
        assert "B" not in table
        assert table.lookup_node_id("addr-b") is None

    def test_lookup_node_id(self):
        """Test reverse lookup by address."""
        table = PeerTable(capacity=4)
        table.upsert("a", "AA:BB:CC:DD:EE:FF", now=0)

        assert table.lookup_node_id("aa:bb:cc:dd:ee:ff") == "a"
        assert table.lookup_node_id("11:22:33:44:55:66") is None

    def test_broadcast_always_resolves(self):
        """Test the broadcast address resolves without an entry."""
        table = PeerTable(capacity=4, broadcast_address=ETH_BROADCAST_MAC)

        assert table.lookup_node_id(ETH_BROADCAST_MAC) == BROADCAST_ID
        assert table.lookup_address(BROADCAST_ID) == ETH_BROADCAST_MAC

    def test_list_is_stable_between_mutations(self):
        """Test list() enumerates in slot order."""
        table = PeerTable(capacity=4)
        for i, name in enumerate(["x", "y", "z"]):
            table.upsert(name, f"addr-{name}", now=i)

        assert [p.node_id for p in table.list()] == ["x", "y", "z"]

        # A refresh does not move the entry
        table.upsert("x", "addr-x", now=100)
        assert [p.node_id for p in table.list()] == ["x", "y", "z"]

    def test_evicted_slot_is_reused_in_place(self):
        """Test an evicted board's slot is overwritten by the new board."""
        table = PeerTable(capacity=3)
        table.upsert("x", "1", now=5)
        table.upsert("y", "2", now=0)
        table.upsert("z", "3", now=10)

        table.upsert("w", "4", now=20)

        assert [p.node_id for p in table.list()] == ["x", "w", "z"]

    def test_touch(self):
        """Test touch only affects known boards."""
        table = PeerTable(capacity=2)
        table.upsert("a", "1", now=0)

        assert table.touch("a", now=99)
        assert table.get("a").last_seen == 99
        assert not table.touch("ghost", now=99)
        assert "ghost" not in table

    def test_no_time_based_expiry(self):
        """Test entries never disappear with age alone."""
        table = PeerTable(capacity=2)
        table.upsert("a", "1", now=0)

        assert table.lookup_address("a") == "1"
        assert table.get("a").age_ms(now=10 ** 9) == 10 ** 9

    def test_clear(self):
        """Test clear empties the table."""
        table = PeerTable(capacity=2)
        table.upsert("a", "1", now=0)
        table.clear()
        assert len(table) == 0


@pytest.mark.parametrize("capacity", [1, 5, 20])
def test_capacity_is_never_exceeded(capacity):
    """Test the table never holds more than its capacity."""
    table = PeerTable(capacity=capacity)
    for i in range(capacity * 3):
        table.upsert(f"board-{i}", f"addr-{i}", now=i)
    assert len(table) == capacity
    # The most recent boards survive
    for i in range(capacity * 2, capacity * 3):
        assert f"board-{i}" in table
