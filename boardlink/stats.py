"""
Statistics and diagnostics for BoardLink.

Thread-safe counters for delivery outcomes plus the network status report.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, fields
from threading import RLock
from typing import Dict, Optional


@dataclass
class MessageStats:
    """Counters for message handling."""

    messages_sent: int = 0
    messages_received: int = 0
    message_failures: int = 0
    messages_acked: int = 0
    retries: int = 0
    timeouts: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0

    discoveries_sent: int = 0
    discoveries_received: int = 0
    peers_discovered: int = 0

    malformed_frames: int = 0
    transport_errors: int = 0
    capacity_rejections: int = 0
    responses_dropped: int = 0


class StatsCollector:
    """
    Thread-safe statistics collector.

    Provides atomic counter operations and the derived success rate.
    """

    def __init__(self):
        self._lock = RLock()
        self._stats = MessageStats()
        self._start_time = time.time()
        self._per_peer: Dict[str, MessageStats] = {}
        self._total_response_ms = 0
        self._responses = 0

    def increment(self, stat_name: str, amount: int = 1, peer: Optional[str] = None) -> None:
        """Increment a counter by name (and the peer's copy when given)."""
        with self._lock:
            if hasattr(self._stats, stat_name):
                setattr(self._stats, stat_name, getattr(self._stats, stat_name) + amount)
            if peer:
                ps = self._per_peer.setdefault(peer, MessageStats())
                if hasattr(ps, stat_name):
                    setattr(ps, stat_name, getattr(ps, stat_name) + amount)

    def record_response_time(self, elapsed_ms: int) -> None:
        """Record the send-to-acknowledgement time of one message."""
        with self._lock:
            self._total_response_ms += max(0, elapsed_ms)
            self._responses += 1

    def success_rate(self) -> float:
        """Percentage of completed tracked messages that succeeded."""
        with self._lock:
            done = self._stats.messages_acked + self._stats.message_failures
            if done == 0:
                return 100.0
            return round(100.0 * self._stats.messages_acked / done, 1)

    def get_stats(self) -> Dict[str, float]:
        """Get a copy of all global statistics."""
        with self._lock:
            out = {f.name: getattr(self._stats, f.name) for f in fields(MessageStats)}
            out["uptime_seconds"] = int(time.time() - self._start_time)
            out["success_rate"] = self.success_rate()
            out["avg_response_time_ms"] = (
                self._total_response_ms // self._responses if self._responses else 0
            )
            return out

    def get_peer_stats(self, peer: str) -> Optional[Dict[str, int]]:
        """Get statistics for a specific board."""
        with self._lock:
            ps = self._per_peer.get(peer)
            if ps is None:
                return None
            return {
                "messages_sent": ps.messages_sent,
                "messages_received": ps.messages_received,
                "message_failures": ps.message_failures,
                "messages_acked": ps.messages_acked,
            }

    def reset(self) -> None:
        """Reset all statistics."""
        with self._lock:
            self._stats = MessageStats()
            self._per_peer.clear()
            self._total_response_ms = 0
            self._responses = 0
            self._start_time = time.time()

    def format_summary(self) -> str:
        """Format statistics as a human-readable summary."""
        stats = self.get_stats()
        uptime = stats["uptime_seconds"]
        hours, remainder = divmod(uptime, 3600)
        minutes, seconds = divmod(remainder, 60)

        return "\n".join([
            f"[STATS] Uptime: {hours}h {minutes}m {seconds}s",
            f"  Messages: sent={stats['messages_sent']} recv={stats['messages_received']} "
            f"acked={stats['messages_acked']} failed={stats['message_failures']}",
            f"  Delivery: retries={stats['retries']} timeouts={stats['timeouts']} "
            f"success={stats['success_rate']}% avg_rt={stats['avg_response_time_ms']}ms",
            f"  Discovery: tx={stats['discoveries_sent']} rx={stats['discoveries_received']} "
            f"new_peers={stats['peers_discovered']}",
            f"  Errors: malformed={stats['malformed_frames']} transport={stats['transport_errors']} "
            f"capacity={stats['capacity_rejections']} dropped_responses={stats['responses_dropped']}",
        ])
