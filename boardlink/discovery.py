"""
Board discovery for BoardLink.

Each board periodically broadcasts a DISCOVERY frame. A board that hears
one records the sender and answers with a unicast DISCOVERY_RESPONSE;
responses are never answered, so the exchange cannot ping-pong.

The broadcast interval backs off in three one-way phases measured from
start(): warm-up (5 s), active (20 s after one minute) and stable
(60 s after five minutes).
"""

import logging
from enum import IntEnum
from typing import Any, Callable, Optional

from .config import (
    DISCOVERY_WARMUP_INTERVAL_MS,
    DISCOVERY_ACTIVE_INTERVAL_MS,
    DISCOVERY_STABLE_INTERVAL_MS,
    DISCOVERY_ACTIVE_AFTER_MS,
    DISCOVERY_STABLE_AFTER_MS,
)
from .dispatch import ResponseQueue
from .envelope import Envelope, MessageKind
from .logging_setup import format_block
from .peers import PeerTable, UpsertResult
from .stats import StatsCollector

logger = logging.getLogger(__name__)


class DiscoveryPhase(IntEnum):
    WARM_UP = 0
    ACTIVE = 1
    STABLE = 2


_INTERVALS = {
    DiscoveryPhase.WARM_UP: DISCOVERY_WARMUP_INTERVAL_MS,
    DiscoveryPhase.ACTIVE: DISCOVERY_ACTIVE_INTERVAL_MS,
    DiscoveryPhase.STABLE: DISCOVERY_STABLE_INTERVAL_MS,
}


class DiscoveryService:
    """
    Announces this board and learns about others.

    Args:
        local_id: This board's id
        peers: Registry fed by discovery traffic
        responses: Queue that DISCOVERY_RESPONSE frames are placed on
        stats: Counters to update
    """

    def __init__(
        self,
        local_id: str,
        peers: PeerTable,
        responses: ResponseQueue,
        stats: Optional[StatsCollector] = None,
    ):
        self.local_id = local_id
        self._peers = peers
        self._responses = responses
        self._stats = stats or StatsCollector()
        self._on_discovered: Optional[Callable[[str], None]] = None

        self._started_at: Optional[int] = None
        self._phase = DiscoveryPhase.WARM_UP
        self._next_broadcast_at: Optional[int] = None

    # ---- configuration ----

    def on_board_discovered(self, callback: Optional[Callable[[str], None]]) -> None:
        """Register the callback fired once per newly discovered board."""
        self._on_discovered = callback

    # ---- scheduling ----

    def start(self, now: int) -> None:
        """Begin the session; the first announcement is due immediately."""
        self._started_at = now
        self._phase = DiscoveryPhase.WARM_UP
        self._next_broadcast_at = now

    @property
    def started(self) -> bool:
        return self._started_at is not None

    def phase(self, now: Optional[int] = None) -> DiscoveryPhase:
        """Current phase, advancing it if a threshold has passed."""
        if now is not None and self._started_at is not None:
            elapsed = now - self._started_at
            if elapsed >= DISCOVERY_STABLE_AFTER_MS:
                target = DiscoveryPhase.STABLE
            elif elapsed >= DISCOVERY_ACTIVE_AFTER_MS:
                target = DiscoveryPhase.ACTIVE
            else:
                target = DiscoveryPhase.WARM_UP
            if target > self._phase:
                logger.info("Discovery phase %s -> %s", self._phase.name, target.name)
                self._phase = target
        return self._phase

    def interval(self, now: Optional[int] = None) -> int:
        """Broadcast interval (ms) for the current phase."""
        return _INTERVALS[self.phase(now)]

    def due(self, now: int) -> bool:
        """
        Check whether an announcement is due, and if so schedule the next.

        Returns:
            True if the caller should broadcast a DISCOVERY frame now
        """
        if self._next_broadcast_at is None or now < self._next_broadcast_at:
            return False
        self._next_broadcast_at = now + self.interval(now)
        return True

    def announcement(self) -> Envelope:
        """The DISCOVERY envelope for this board."""
        self._stats.increment("discoveries_sent")
        return Envelope(sender=self.local_id, kind=MessageKind.DISCOVERY)

    def request_announcement(self, now: int) -> None:
        """Force an announcement on the next tick."""
        self._next_broadcast_at = now

    # ---- inbound ----

    def handle_discovery(self, env: Envelope, address: Any, now: int) -> bool:
        """
        Process a DISCOVERY frame from another board.

        Returns:
            True if the sender was previously unknown
        """
        if env.sender == self.local_id:
            return False
        self._stats.increment("discoveries_received", peer=env.sender)
        is_new = self._learn(env.sender, address, now)
        self._responses.push(
            address,
            Envelope(sender=self.local_id, kind=MessageKind.DISCOVERY_RESPONSE),
            now,
        )
        return is_new

    def handle_discovery_response(self, env: Envelope, address: Any, now: int) -> bool:
        """
        Process a DISCOVERY_RESPONSE frame. Never answered.

        Returns:
            True if the sender was previously unknown
        """
        if env.sender == self.local_id:
            return False
        return self._learn(env.sender, address, now)

    def _learn(self, node_id: str, address: Any, now: int) -> bool:
        result = self._peers.upsert(node_id, address, now)
        if result is UpsertResult.REFRESHED:
            return False

        self._stats.increment("peers_discovered")
        logger.info(
            format_block(
                "DISCOVERY",
                [
                    f"board : {node_id}",
                    f"addr  : {address}",
                    f"peers : {len(self._peers)}",
                ],
            )
        )
        callback = self._on_discovered
        if callback is not None:
            try:
                callback(node_id)
            except Exception:
                logger.exception("Discovery callback failed for %s", node_id)
        return True
