"""
Hardware pin backends.

The node performs its default pin actions (unconditional write for a
control message, tri-stated read for a read request) through a
PinBackend. SimulatedPins keeps pin state in memory for hosts without
GPIO and for tests.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from threading import RLock
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)

LOW = 0
HIGH = 1


class PinMode(Enum):
    INPUT = "input"
    OUTPUT = "output"


class PinBackend(ABC):
    """Access to the local board's pins."""

    num_pins: int = 40

    def valid(self, pin: int) -> bool:
        return 0 <= pin < self.num_pins

    @abstractmethod
    def write(self, pin: int, value: int) -> None:
        """Configure ``pin`` as an output and drive it to ``value``."""

    @abstractmethod
    def read(self, pin: int) -> int:
        """Configure ``pin`` as an input and sample it."""


class SimulatedPins(PinBackend):
    """In-memory pin bank."""

    def __init__(self, num_pins: int = 40):
        self.num_pins = num_pins
        self._lock = RLock()
        self._levels: Dict[int, int] = {}
        self._modes: Dict[int, PinMode] = {}
        self.writes: List[Tuple[int, int]] = []

    def write(self, pin: int, value: int) -> None:
        with self._lock:
            self._modes[pin] = PinMode.OUTPUT
            self._levels[pin] = value
            self.writes.append((pin, value))
        logger.debug("pin %d <- %d", pin, value)

    def read(self, pin: int) -> int:
        with self._lock:
            # Switching to input releases the pin; the last level is kept
            # so a simulated bank reads back what it was driven to.
            self._modes[pin] = PinMode.INPUT
            return self._levels.get(pin, LOW)

    def set_input(self, pin: int, value: int) -> None:
        """Set the level an input pin will read."""
        with self._lock:
            self._levels[pin] = value

    def level(self, pin: int) -> int:
        with self._lock:
            return self._levels.get(pin, LOW)

    def mode(self, pin: int) -> PinMode:
        with self._lock:
            return self._modes.get(pin, PinMode.INPUT)
