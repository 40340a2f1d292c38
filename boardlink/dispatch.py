"""
Dispatch and subscription registry for BoardLink.

This module implements:
- A bounded subscription table for topics and (board, pin) filters
- The queued response buffer drained by the node's tick()
- Routing of decoded envelopes to handlers or default pin actions
"""

import itertools
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from threading import RLock
from typing import Any, Callable, Deque, List, Optional

from .config import MAX_PIN_VALUE, MAX_SUBSCRIPTIONS, MAX_QUEUED_RESPONSES, QUEUED_RESPONSE_TTL_MS
from .envelope import Envelope, MessageKind
from .pins import PinBackend
from .stats import StatsCollector

logger = logging.getLogger(__name__)


# Handler signatures
TopicHandler = Callable[[str, str, str], None]         # (sender, topic, message)
PinHandler = Callable[[str, int, int], None]           # (sender, pin, value)
PinReadHandler = Callable[[str, int], Optional[int]]   # (sender, pin) -> value
MessageHandler = Callable[[str, str], None]            # (sender, message)
PinSubscribeHandler = Callable[[str, int], None]       # (sender, pin)


# =============================================================================
# Queued Responses
# =============================================================================

@dataclass
class QueuedResponse:
    """An outbound frame produced in the receive path."""
    address: Any
    envelope: Envelope
    queued_at: int


class ResponseQueue:
    """
    Bounded FIFO of responses waiting for tick().

    When full, the oldest entry is dropped to make room.
    """

    def __init__(
        self,
        capacity: int = MAX_QUEUED_RESPONSES,
        ttl_ms: int = QUEUED_RESPONSE_TTL_MS,
        stats: Optional[StatsCollector] = None,
    ):
        self._lock = RLock()
        self._queue: Deque[QueuedResponse] = deque()
        self._capacity = capacity
        self._ttl_ms = ttl_ms
        self._stats = stats

    def push(self, address: Any, envelope: Envelope, now: int) -> None:
        with self._lock:
            if len(self._queue) >= self._capacity:
                dropped = self._queue.popleft()
                logger.warning(
                    "Response queue full, dropping %s for %s",
                    dropped.envelope.kind.name, dropped.address,
                )
                if self._stats:
                    self._stats.increment("responses_dropped")
            self._queue.append(QueuedResponse(address, envelope, now))

    def drain(self, now: int) -> List[QueuedResponse]:
        """Remove and return every live entry, discarding stale ones."""
        with self._lock:
            items = list(self._queue)
            self._queue.clear()
        live = []
        for item in items:
            if now - item.queued_at > self._ttl_ms:
                logger.debug("Discarding stale %s for %s", item.envelope.kind.name, item.address)
                if self._stats:
                    self._stats.increment("responses_dropped")
                continue
            live.append(item)
        return live

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)


# =============================================================================
# Subscriptions
# =============================================================================

class SubscriptionKind(Enum):
    TOPIC = "topic"
    PIN_CONTROL = "pin_control"   # Accept control of a local pin from a board
    PIN_STATE = "pin_state"       # Listen to a remote board's pin broadcasts


@dataclass
class Subscription:
    kind: SubscriptionKind
    handler: Optional[Callable]
    seq: int
    topic: Optional[str] = None
    peer: Optional[str] = None
    pin: Optional[int] = None
    active: bool = True

    def matches_pin(self, kind: SubscriptionKind, peer: str, pin: int) -> bool:
        return self.active and self.kind is kind and self.peer == peer and self.pin == pin


class SubscriptionTable:
    """Fixed-capacity subscription slots. A full table rejects new entries."""

    def __init__(self, capacity: int = MAX_SUBSCRIPTIONS):
        self._lock = RLock()
        self._slots: List[Optional[Subscription]] = [None] * capacity
        self._capacity = capacity
        self._seq = itertools.count()

    @property
    def capacity(self) -> int:
        return self._capacity

    def _insert(self, sub: Subscription) -> bool:
        for i, slot in enumerate(self._slots):
            if slot is None or not slot.active:
                self._slots[i] = sub
                return True
        logger.warning("Subscription table full (%d), rejecting %s", self._capacity, sub.kind.value)
        return False

    def add_topic(self, topic: str, handler: TopicHandler) -> bool:
        with self._lock:
            return self._insert(Subscription(
                kind=SubscriptionKind.TOPIC, handler=handler, seq=next(self._seq), topic=topic,
            ))

    def add_pin(
        self, kind: SubscriptionKind, peer: str, pin: int, handler: Optional[PinHandler]
    ) -> bool:
        """Add a (board, pin) filter, replacing the handler of an identical one."""
        with self._lock:
            for slot in self._slots:
                if slot is not None and slot.matches_pin(kind, peer, pin):
                    slot.handler = handler
                    return True
            return self._insert(Subscription(
                kind=kind, handler=handler, seq=next(self._seq), peer=peer, pin=pin,
            ))

    def remove_topic(self, topic: str, handler: Optional[TopicHandler] = None) -> int:
        """Deactivate subscriptions for a topic (optionally one handler only)."""
        with self._lock:
            removed = 0
            for slot in self._slots:
                if (slot is not None and slot.active and slot.kind is SubscriptionKind.TOPIC
                        and slot.topic == topic and (handler is None or slot.handler is handler)):
                    slot.active = False
                    slot.handler = None
                    removed += 1
            return removed

    def remove_pin(self, kind: SubscriptionKind, peer: str, pin: int) -> int:
        with self._lock:
            removed = 0
            for slot in self._slots:
                if slot is not None and slot.matches_pin(kind, peer, pin):
                    slot.active = False
                    slot.handler = None
                    removed += 1
            return removed

    def clear(self, kind: Optional[SubscriptionKind] = None) -> int:
        """Deactivate every subscription (of one kind, if given)."""
        with self._lock:
            removed = 0
            for slot in self._slots:
                if slot is not None and slot.active and (kind is None or slot.kind is kind):
                    slot.active = False
                    slot.handler = None
                    removed += 1
            return removed

    def match_topic(self, topic: str) -> List[Subscription]:
        with self._lock:
            subs = [s for s in self._slots
                    if s is not None and s.active and s.kind is SubscriptionKind.TOPIC
                    and s.topic == topic]
        return sorted(subs, key=lambda s: s.seq)

    def match_pin(self, kind: SubscriptionKind, peer: str, pin: int) -> List[Subscription]:
        with self._lock:
            subs = [s for s in self._slots if s is not None and s.matches_pin(kind, peer, pin)]
        return sorted(subs, key=lambda s: s.seq)

    def active(self) -> List[Subscription]:
        with self._lock:
            return [s for s in self._slots if s is not None and s.active]

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for s in self._slots if s is not None and s.active)


# =============================================================================
# Dispatcher
# =============================================================================

class Dispatcher:
    """
    Routes decoded application envelopes.

    Pin control falls back to an unconditional write and pin read
    requests to a tri-stated read when no handler claims them. Read
    responses are queued, never sent from here.
    """

    def __init__(
        self,
        local_id: str,
        pins: PinBackend,
        responses: ResponseQueue,
        subscriptions: Optional[SubscriptionTable] = None,
    ):
        self.local_id = local_id
        self.pins = pins
        self.responses = responses
        self.subscriptions = subscriptions or SubscriptionTable()

        self.pin_control_handler: Optional[PinHandler] = None
        self.pin_read_handler: Optional[PinReadHandler] = None
        self.pin_state_handler: Optional[PinHandler] = None
        self.pin_subscribe_handler: Optional[PinSubscribeHandler] = None
        self.message_handler: Optional[MessageHandler] = None
        self.serial_handler: Optional[MessageHandler] = None

    def dispatch(self, env: Envelope, address: Any, now: int) -> bool:
        """
        Route one envelope.

        Returns:
            True if a handler or default action consumed it
        """
        kind = env.kind
        if kind == MessageKind.PIN_CONTROL:
            return self._pin_control(env)
        if kind == MessageKind.PIN_READ_REQUEST:
            return self._pin_read(env, address, now)
        if kind == MessageKind.PIN_PUBLISH:
            return self._pin_state(env)
        if kind == MessageKind.PIN_SUBSCRIBE:
            return self._call(self.pin_subscribe_handler, env.sender, env.pin)
        if kind == MessageKind.TOPIC_MESSAGE:
            handled = False
            for sub in self.subscriptions.match_topic(env.topic):
                handled = self._call(sub.handler, env.sender, env.topic, env.message) or handled
            return handled
        if kind == MessageKind.DIRECT_MESSAGE:
            return self._call(self.message_handler, env.sender, env.message)
        if kind == MessageKind.SERIAL_DATA:
            return self._call(self.serial_handler, env.sender, env.data)
        logger.debug("No dispatch route for %s from %s", kind.name, env.sender)
        return False

    def _pin_control(self, env: Envelope) -> bool:
        claimed = False
        for sub in self.subscriptions.match_pin(SubscriptionKind.PIN_CONTROL, env.sender, env.pin):
            claimed = True
            if sub.handler is None:
                self._default_write(env.pin, env.value)
            else:
                self._call(sub.handler, env.sender, env.pin, env.value)
        if self.pin_control_handler is not None:
            claimed = True
            self._call(self.pin_control_handler, env.sender, env.pin, env.value)
        if not claimed:
            self._default_write(env.pin, env.value)
        return True

    def _default_write(self, pin: int, value: int) -> None:
        if not self.pins.valid(pin):
            logger.debug("Ignoring write to out-of-range pin %d", pin)
            return
        self.pins.write(pin, value)

    def _pin_read(self, env: Envelope, address: Any, now: int) -> bool:
        value: Optional[int] = None
        if self.pin_read_handler is not None:
            try:
                value = self.pin_read_handler(env.sender, env.pin)
            except Exception:
                logger.exception("Pin read handler failed for pin %d", env.pin)
                value = None
            if value is not None and not (isinstance(value, int) and 0 <= value <= MAX_PIN_VALUE):
                logger.warning("Pin read handler returned %r for pin %d, reporting failure",
                               value, env.pin)
                value = None
        elif self.pins.valid(env.pin):
            value = self.pins.read(env.pin)

        success = value is not None
        self.responses.push(
            address,
            Envelope(
                sender=self.local_id,
                kind=MessageKind.PIN_READ_RESPONSE,
                message_id=env.message_id,
                pin=env.pin,
                value=int(value) if success else 0,
                success=success,
            ),
            now,
        )
        return True

    def _pin_state(self, env: Envelope) -> bool:
        handled = False
        for sub in self.subscriptions.match_pin(SubscriptionKind.PIN_STATE, env.sender, env.pin):
            handled = self._call(sub.handler, env.sender, env.pin, env.value) or handled
        if self.pin_state_handler is not None:
            handled = self._call(self.pin_state_handler, env.sender, env.pin, env.value) or handled
        return handled

    @staticmethod
    def _call(handler: Optional[Callable], *args) -> bool:
        if handler is None:
            return False
        try:
            handler(*args)
        except Exception:
            logger.exception("Handler %r raised", handler)
        return True
