"""
Transport adapter contract for BoardLink.

A transport moves opaque frames between boards. It reports every inbound
frame and, where the medium supports it, the outcome of every unicast
send to exactly one registered listener.

This module also provides an in-memory loopback medium used by the tests
and by simulate.py.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from threading import RLock
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from .config import ETH_BROADCAST_MAC, MAX_FRAME_SIZE
from .exceptions import TransportError, TransportInitError

logger = logging.getLogger(__name__)


class TransportListener(ABC):
    """Receiver of transport notifications (implemented by the node)."""

    @abstractmethod
    def on_frame_received(self, address: Any, data: bytes) -> None:
        """Raw, unvalidated inbound frame from ``address``."""

    @abstractmethod
    def on_send_completed(self, address: Any, success: bool) -> None:
        """Delivery outcome of an earlier send_to()."""


class Transport(ABC):
    """
    Base class for transports.

    Attributes:
        max_frame_size: Largest frame the medium carries
        broadcast_address: Address that broadcast frames arrive from
        reports_send_status: True if on_send_completed() is ever called
    """

    max_frame_size: int = MAX_FRAME_SIZE
    broadcast_address: Any = ETH_BROADCAST_MAC
    reports_send_status: bool = False

    def __init__(self):
        self._listener: Optional[TransportListener] = None
        self.local_node_id: str = ""

    @property
    def listener(self) -> Optional[TransportListener]:
        return self._listener

    def initialize(self, local_node_id: str, listener: TransportListener) -> None:
        """
        Bring the medium up and register the single listener.

        Raises:
            TransportInitError: If the medium cannot be opened
        """
        self.local_node_id = local_node_id
        self._listener = listener
        self.open()

    def open(self) -> None:
        """Medium-specific bring-up (override as needed)."""

    @abstractmethod
    def broadcast(self, data: bytes) -> None:
        """
        Hand a frame to the medium for every board.

        Raises:
            TransportError: If the medium refused the frame
        """

    @abstractmethod
    def send_to(self, address: Any, data: bytes) -> None:
        """
        Hand a frame to the medium for one board.

        Raises:
            TransportError: If the medium refused the frame
        """

    def close(self) -> None:
        """Release the medium."""
        self._listener = None

    @property
    def local_address(self) -> Any:
        return None

    def _deliver_frame(self, address: Any, data: bytes) -> None:
        listener = self._listener
        if listener is not None:
            listener.on_frame_received(address, data)

    def _deliver_completion(self, address: Any, success: bool) -> None:
        listener = self._listener
        if listener is not None:
            listener.on_send_completed(address, success)


# =============================================================================
# In-memory loopback medium
# =============================================================================

class LoopbackMedium:
    """
    Shared in-memory broadcast medium.

    Sends are queued and delivered only when pump() is called, which makes
    delivery order deterministic for tests. Links can be taken down per
    pair or per destination; a unicast over a down link is not delivered
    and reports a failed send completion.
    """

    def __init__(self, broadcast_address: str = ETH_BROADCAST_MAC):
        self._lock = RLock()
        self.broadcast_address = broadcast_address
        self._nodes: Dict[str, "LoopbackTransport"] = {}
        self._events: Deque[Tuple[str, Any, Any, Any]] = deque()
        self._down: Set[Tuple[str, str]] = set()
        self._unreachable: Set[str] = set()
        self._next_addr = 1
        self.log: List[Tuple[str, str, bytes]] = []  # (src, dst, data)

    def create_transport(self, address: Optional[str] = None) -> "LoopbackTransport":
        """Create a transport attached to this medium."""
        with self._lock:
            if address is None:
                address = f"02:00:00:00:00:{self._next_addr:02x}"
                self._next_addr += 1
            return LoopbackTransport(self, address)

    def attach(self, transport: "LoopbackTransport") -> None:
        with self._lock:
            if transport.address in self._nodes:
                raise TransportInitError(f"address {transport.address} already attached")
            self._nodes[transport.address] = transport

    def detach(self, transport: "LoopbackTransport") -> None:
        with self._lock:
            self._nodes.pop(transport.address, None)

    # ---- link control ----

    def set_link(self, a: str, b: str, up: bool) -> None:
        """Bring the link between two addresses up or down (both ways)."""
        with self._lock:
            for pair in ((a, b), (b, a)):
                if up:
                    self._down.discard(pair)
                else:
                    self._down.add(pair)

    def set_reachable(self, address: str, reachable: bool) -> None:
        """Make every frame to ``address`` fail (or succeed again)."""
        with self._lock:
            if reachable:
                self._unreachable.discard(address)
            else:
                self._unreachable.add(address)

    def _link_up(self, src: str, dst: str) -> bool:
        return (src, dst) not in self._down and dst not in self._unreachable

    # ---- transmission ----

    def transmit(self, src: str, dst: str, data: bytes) -> None:
        with self._lock:
            self.log.append((src, dst, bytes(data)))
            if dst == self.broadcast_address:
                for addr in self._nodes:
                    if addr != src and self._link_up(src, addr):
                        self._events.append(("frame", addr, src, bytes(data)))
                return

            delivered = dst in self._nodes and self._link_up(src, dst)
            if delivered:
                self._events.append(("frame", dst, src, bytes(data)))
            self._events.append(("complete", src, dst, delivered))

    def pending(self) -> int:
        with self._lock:
            return len(self._events)

    def pump(self, max_events: int = 10000) -> int:
        """
        Deliver queued frames and completions, including any generated
        while delivering.

        Returns:
            Number of events delivered
        """
        count = 0
        while count < max_events:
            with self._lock:
                if not self._events:
                    break
                event, target, arg1, arg2 = self._events.popleft()
                node = self._nodes.get(target)
            count += 1
            if node is None:
                continue
            if event == "frame":
                node._deliver_frame(arg1, arg2)
            else:
                node._deliver_completion(arg1, arg2)
        return count

    def frames_between(self, src: str, dst: str) -> List[bytes]:
        """Frames transmitted from src to dst (for assertions)."""
        with self._lock:
            return [d for s, t, d in self.log if s == src and t == dst]


class LoopbackTransport(Transport):
    """Transport endpoint on a LoopbackMedium."""

    reports_send_status = True

    def __init__(self, medium: LoopbackMedium, address: str):
        super().__init__()
        self.medium = medium
        self.address = address
        self.broadcast_address = medium.broadcast_address
        self.fail_sends = False  # Raise TransportError on hand-off

    @property
    def local_address(self) -> str:
        return self.address

    def open(self) -> None:
        self.medium.attach(self)

    def close(self) -> None:
        self.medium.detach(self)
        super().close()

    def broadcast(self, data: bytes) -> None:
        self._check(data)
        self.medium.transmit(self.address, self.broadcast_address, data)

    def send_to(self, address: Any, data: bytes) -> None:
        self._check(data)
        self.medium.transmit(self.address, address, data)

    def _check(self, data: bytes) -> None:
        if self.fail_sends:
            raise TransportError("medium rejected frame")
        if len(data) > self.max_frame_size:
            raise TransportError(f"frame of {len(data)} bytes exceeds {self.max_frame_size}")
