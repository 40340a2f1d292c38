"""
Peer registry for BoardLink.

Bounded table mapping a board id to its transport address and the time
it was last seen. Entries are never removed; when the table is full the
entry with the oldest last-seen timestamp is overwritten.
"""

import time
import logging
from dataclasses import dataclass
from enum import Enum
from threading import RLock
from typing import Any, List, Optional

from .config import MAX_PEERS, BROADCAST_ID

logger = logging.getLogger(__name__)


def monotonic_ms() -> int:
    """Monotonic clock in milliseconds."""
    return int(time.monotonic() * 1000)


class UpsertResult(Enum):
    """Outcome of PeerTable.upsert()."""
    INSERTED = "inserted"
    REFRESHED = "refreshed"
    EVICTED_AND_INSERTED = "evicted-and-inserted"


@dataclass
class PeerEntry:
    """A known board."""

    node_id: str
    address: Any
    last_seen: int
    active: bool = True

    def age_ms(self, now: Optional[int] = None) -> int:
        """Milliseconds since the board was last seen."""
        if now is None:
            now = monotonic_ms()
        return max(0, now - self.last_seen)


class PeerTable:
    """
    Thread-safe fixed-capacity peer table.

    Slots are allocated by a first-inactive scan; a full table evicts the
    slot with the oldest ``last_seen``. ``list()`` enumerates active slots
    in slot order, so indices stay valid until the next mutation.
    """

    def __init__(self, capacity: int = MAX_PEERS, broadcast_address: Any = None):
        self._lock = RLock()
        self._slots: List[Optional[PeerEntry]] = [None] * capacity
        self._capacity = capacity
        self._broadcast_address = broadcast_address

    @property
    def capacity(self) -> int:
        return self._capacity

    def _find_slot(self, node_id: str) -> int:
        for i, entry in enumerate(self._slots):
            if entry is not None and entry.active and entry.node_id == node_id:
                return i
        return -1

    def upsert(self, node_id: str, address: Any, now: Optional[int] = None) -> UpsertResult:
        """
        Insert a board or refresh an existing one.

        Args:
            node_id: Board id
            address: Transport address the board was seen at
            now: Timestamp in milliseconds (defaults to the monotonic clock)

        Returns:
            Whether the entry was inserted, refreshed, or overwrote the
            stalest entry of a full table
        """
        if now is None:
            now = monotonic_ms()

        with self._lock:
            idx = self._find_slot(node_id)
            if idx >= 0:
                entry = self._slots[idx]
                entry.address = address
                entry.last_seen = now
                return UpsertResult.REFRESHED

            new_entry = PeerEntry(node_id=node_id, address=address, last_seen=now)

            for i, entry in enumerate(self._slots):
                if entry is None or not entry.active:
                    self._slots[i] = new_entry
                    return UpsertResult.INSERTED

            # Table full: overwrite the stalest entry
            oldest = min(range(self._capacity), key=lambda i: self._slots[i].last_seen)
            evicted = self._slots[oldest]
            logger.debug(
                "Peer table full, evicting %s (last seen %d)",
                evicted.node_id, evicted.last_seen,
            )
            self._slots[oldest] = new_entry
            return UpsertResult.EVICTED_AND_INSERTED

    def touch(self, node_id: str, now: Optional[int] = None) -> bool:
        """Bump the last-seen time of a known board. Returns False if unknown."""
        if now is None:
            now = monotonic_ms()
        with self._lock:
            idx = self._find_slot(node_id)
            if idx < 0:
                return False
            self._slots[idx].last_seen = now
            return True

    def get(self, node_id: str) -> Optional[PeerEntry]:
        """Get the entry for a board id."""
        with self._lock:
            idx = self._find_slot(node_id)
            return self._slots[idx] if idx >= 0 else None

    def lookup_address(self, node_id: str) -> Optional[Any]:
        """Resolve a board id to its transport address."""
        if node_id == BROADCAST_ID:
            return self._broadcast_address
        entry = self.get(node_id)
        return entry.address if entry is not None else None

    def lookup_node_id(self, address: Any) -> Optional[str]:
        """
        Resolve a transport address back to a board id.

        The broadcast address always resolves to BROADCAST_ID.
        """
        if self._broadcast_address is not None and _same_address(address, self._broadcast_address):
            return BROADCAST_ID
        with self._lock:
            for entry in self._slots:
                if entry is not None and entry.active and _same_address(entry.address, address):
                    return entry.node_id
        return None

    def list(self) -> List[PeerEntry]:
        """Snapshot of the active entries in slot order."""
        with self._lock:
            return [e for e in self._slots if e is not None and e.active]

    def clear(self) -> None:
        with self._lock:
            self._slots = [None] * self._capacity

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for e in self._slots if e is not None and e.active)

    def __contains__(self, node_id: str) -> bool:
        with self._lock:
            return self._find_slot(node_id) >= 0


def _same_address(a: Any, b: Any) -> bool:
    # MAC strings compare case-insensitively
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    return a == b
