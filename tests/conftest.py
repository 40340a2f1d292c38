"""
Pytest configuration and fixtures for BoardLink tests.
"""

import pytest
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from boardlink.node import BoardLink
from boardlink.pins import SimulatedPins
from boardlink.transport import LoopbackMedium


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def medium():
    return LoopbackMedium()


@pytest.fixture
def make_node(medium, clock):
    """Factory for started nodes on the shared medium."""
    created = []

    def _make(board_id: str, **kwargs) -> BoardLink:
        node = BoardLink(
            board_id,
            medium.create_transport(),
            pins=kwargs.pop("pins", None) or SimulatedPins(),
            clock=clock,
            **kwargs,
        )
        assert node.begin()
        created.append(node)
        return node

    yield _make

    for node in created:
        node.end()


def settle(medium, nodes, rounds: int = 5) -> None:
    """Alternate ticks and deliveries without advancing the clock."""
    for _ in range(rounds):
        for node in nodes:
            node.tick()
        medium.pump()


def run_for(medium, clock, nodes, duration_ms: int, step_ms: int = 10) -> None:
    """Tick and deliver while advancing the clock."""
    elapsed = 0
    while elapsed < duration_ms:
        for node in nodes:
            node.tick()
        medium.pump()
        clock.advance(step_ms)
        elapsed += step_ms


@pytest.fixture
def pair(make_node, medium):
    """Two boards that have discovered each other."""
    a = make_node("board-a")
    b = make_node("board-b")
    settle(medium, [a, b])
    assert a.is_board_available("board-b")
    assert b.is_board_available("board-a")
    return a, b
