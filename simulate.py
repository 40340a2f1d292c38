#!/usr/bin/env python3
"""
BoardLink In-Memory Network Simulation

Runs several BoardLink nodes on a shared in-memory medium with a
simulated clock. No network interfaces or serial ports are required.
"""

import os
import sys
from typing import List, Tuple

# Add project to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from boardlink.envelope import MessageKind, decode
from boardlink.node import BoardLink
from boardlink.pins import SimulatedPins
from boardlink.transport import LoopbackMedium


# =============================================================================
# Simulated Clock
# =============================================================================

class SimClock:
    """Millisecond clock advanced explicitly by the simulation."""

    def __init__(self, start: int = 0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


# =============================================================================
# Simulated Network
# =============================================================================

class SimulatedNetwork:
    """A set of BoardLink nodes sharing one loopback medium."""

    def __init__(self):
        self.clock = SimClock()
        self.medium = LoopbackMedium()
        self.nodes: List[BoardLink] = []

    def add_node(self, name: str) -> BoardLink:
        node = BoardLink(
            name,
            self.medium.create_transport(),
            pins=SimulatedPins(),
            clock=self.clock,
        )
        node.begin()
        self.nodes.append(node)
        return node

    def run(self, duration_ms: int, step_ms: int = 10) -> None:
        """Tick every node and deliver traffic for ``duration_ms``."""
        elapsed = 0
        while elapsed < duration_ms:
            for node in self.nodes:
                node.tick()
            self.medium.pump()
            self.clock.advance(step_ms)
            elapsed += step_ms

    def stop(self) -> None:
        for node in self.nodes:
            node.end()


def create_network(num_nodes: int = 4) -> Tuple[SimulatedNetwork, List[BoardLink]]:
    """Create a network of ``num_nodes`` boards and let discovery settle."""
    network = SimulatedNetwork()
    for i in range(num_nodes):
        network.add_node(f"board-{i + 1}")
    network.run(200)
    return network, network.nodes


def banner(title: str) -> None:
    print("\n\n" + "=" * 60)
    print(title)
    print("=" * 60)


def run_simulation():
    """Run the full simulation."""

    print("\n" + "=" * 60)
    print("BOARDLINK NETWORK SIMULATION")
    print("=" * 60)

    # =========================================================================
    # Test 1: Discovery
    # =========================================================================
    banner("TEST 1: Discovery")

    network, nodes = create_network(4)
    for node in nodes:
        print(f"  {node.board_id}: {node.available_boards()}")

    assert all(n.available_boards_count() == 3 for n in nodes), "All boards should see each other"
    print("\n✓ Test 1 PASSED: every board discovered the others")

    # =========================================================================
    # Test 2: Remote Pin Control
    # =========================================================================
    banner("TEST 2: Remote Pin Control")

    confirmations = []
    nodes[0].control_remote_pin(
        "board-2", 13, 1,
        lambda board, pin, value, ok: confirmations.append((board, pin, value, ok)),
    )
    network.run(100)

    print(f"  board-2 pin 13 = {nodes[1].pins.level(13)}")
    print(f"  confirmations  = {confirmations}")
    assert nodes[1].pins.level(13) == 1
    assert confirmations == [("board-2", 13, 1, True)]
    print("\n✓ Test 2 PASSED: pin written and acknowledged")

    # =========================================================================
    # Test 3: Remote Pin Read
    # =========================================================================
    banner("TEST 3: Remote Pin Read")

    nodes[2].pins.set_input(4, 1)
    reads = []
    nodes[0].read_remote_pin(
        "board-3", 4, lambda board, pin, value, ok: reads.append((board, pin, value, ok))
    )
    network.run(100)

    print(f"  reads = {reads}")
    assert reads == [("board-3", 4, 1, True)]
    print("\n✓ Test 3 PASSED: pin read answered")

    # =========================================================================
    # Test 4: Topics
    # =========================================================================
    banner("TEST 4: Topic Publish/Subscribe")

    received = []
    nodes[1].subscribe_topic("sensors", lambda b, t, m: received.append((nodes[1].board_id, m)))
    nodes[3].subscribe_topic("sensors", lambda b, t, m: received.append((nodes[3].board_id, m)))
    nodes[0].publish_topic("sensors", "temp=21.5")
    network.run(50)

    print(f"  received = {received}")
    assert sorted(received) == [("board-2", "temp=21.5"), ("board-4", "temp=21.5")]
    print("\n✓ Test 4 PASSED: topic delivered to subscribers only")

    # =========================================================================
    # Test 5: Retries Against an Unreachable Board
    # =========================================================================
    banner("TEST 5: Retries Against an Unreachable Board")

    nodes[0].set_max_retries(2)
    nodes[0].set_retry_delay(100)
    network.medium.set_reachable(nodes[3].transport.address, False)

    outcome = []
    failures = []
    nodes[0].on_send_failure(lambda board, kind, pin, value: failures.append(board))
    nodes[0].control_remote_pin(
        "board-4", 7, 1, lambda board, pin, value, ok: outcome.append(ok)
    )
    network.run(1000)

    frames = network.medium.frames_between(nodes[0].transport.address, nodes[3].transport.address)
    retries = sum(1 for f in frames if decode(f).kind == MessageKind.PIN_CONTROL) - 1
    print(f"  outcome  = {outcome}")
    print(f"  retries  = {retries}")
    print(f"  failures = {len(failures)}")
    assert outcome == [False]
    assert retries == 2
    print("\n✓ Test 5 PASSED: exactly two retries, then failure")

    # =========================================================================
    # Summary
    # =========================================================================
    banner("NETWORK STATUS")
    for node in nodes:
        print(node.format_summary())

    network.stop()
    print("\nAll simulation scenarios passed.")


if __name__ == "__main__":
    run_simulation()
