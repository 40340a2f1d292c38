"""
Reliable delivery for BoardLink.

This module implements:
- Correlation ids and a fixed-size table of tracked messages
- Matching of acknowledgements and pin read responses
- Bounded automatic retry of pin-control messages
- Acknowledgement timeouts
- Exactly one completion callback per tracked message

Notifications (acknowledgements, responses, send completions) only
update slot state. Retransmission, timeout scanning and every completion
callback happen in tick().
"""

import uuid
import logging
from dataclasses import dataclass
from enum import Enum
from threading import RLock
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
from collections import deque

from .config import (
    ACK_TIMEOUT_MS,
    ACK_GRACE_MS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_MS,
    MAX_TRACKED_MESSAGES,
    clamp_retries,
    clamp_retry_delay,
)
from .envelope import Envelope, MessageKind, encode
from .exceptions import (
    CapacityExceededError,
    PayloadTooLargeError,
    TransportError,
    UnknownPeerError,
    ValidationError,
)
from .logging_setup import is_verbose
from .peers import PeerTable, monotonic_ms
from .stats import StatsCollector
from .transport import Transport

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Never carry their own correlation id and are never tracked
RESPONSE_KINDS = frozenset({
    MessageKind.ACKNOWLEDGEMENT,
    MessageKind.DISCOVERY,
    MessageKind.DISCOVERY_RESPONSE,
    MessageKind.PIN_READ_RESPONSE,
})

# Matched by a response frame rather than an acknowledgement
REQUEST_KINDS = frozenset({MessageKind.PIN_READ_REQUEST})

# Resent automatically after a failed attempt
RETRY_KINDS = frozenset({MessageKind.PIN_CONTROL})

# (success, response envelope or None)
CompletionCallback = Callable[[bool, Optional[Envelope]], None]
SendStatusHook = Callable[[str, MessageKind, bool], None]
SendFailureHook = Callable[[str, MessageKind, Optional[int], Optional[int]], None]


class SendResult(Enum):
    """Immediate outcome of a send() call."""
    OK = "ok"
    UNKNOWN_PEER = "unknown-peer"
    TRANSPORT_ERROR = "transport-error"
    CAPACITY_EXCEEDED = "capacity-exceeded"
    PAYLOAD_TOO_LARGE = "payload-too-large"
    INVALID = "invalid"
    NOT_CONNECTED = "not-connected"

    def __bool__(self) -> bool:
        return self is SendResult.OK


class SlotState(Enum):
    FREE = "free"
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"


@dataclass
class TrackedMessage:
    """An outstanding send awaiting acknowledgement, response or timeout."""
    message_id: str = ""
    target: str = ""
    address: Any = None
    kind: MessageKind = MessageKind.DIRECT_MESSAGE
    envelope: Optional[Envelope] = None
    data: bytes = b""
    sent_at: int = 0
    last_sent_at: int = 0
    retry_count: int = 0
    next_retry_at: Optional[int] = None
    callback: Optional[CompletionCallback] = None
    state: SlotState = SlotState.FREE
    expects_ack: bool = False
    retry_eligible: bool = False
    awaiting_status: bool = False
    completed: bool = False
    acked_at: int = 0
    response: Optional[Envelope] = None

    @property
    def pin(self) -> Optional[int]:
        return self.envelope.pin if self.envelope else None

    @property
    def value(self) -> Optional[int]:
        return self.envelope.value if self.envelope else None


def new_message_id() -> str:
    """Opaque correlation id."""
    return str(uuid.uuid4())


# =============================================================================
# Delivery Engine
# =============================================================================

class DeliveryEngine:
    """
    Tracks outbound messages until they are acknowledged or give up.

    A full tracking table rejects the send (CAPACITY_EXCEEDED) and
    nothing is transmitted. Acknowledgements for unknown or already
    completed ids are ignored.
    """

    def __init__(
        self,
        local_id: str,
        transport: Transport,
        peers: PeerTable,
        stats: Optional[StatsCollector] = None,
        capacity: int = MAX_TRACKED_MESSAGES,
        ack_timeout_ms: int = ACK_TIMEOUT_MS,
        ack_grace_ms: int = ACK_GRACE_MS,
        clock: Callable[[], int] = monotonic_ms,
    ):
        self.local_id = local_id
        self._transport = transport
        self._peers = peers
        self._stats = stats or StatsCollector()
        self._clock = clock
        self._lock = RLock()
        self._slots: List[TrackedMessage] = [TrackedMessage() for _ in range(capacity)]
        self._deferred: Deque[Tuple[MessageKind, CompletionCallback, bool]] = deque()
        # address -> (message id, attempt) or None for untracked, in transmission order
        self._inflight: Dict[Any, Deque[Optional[Tuple[str, int]]]] = {}

        self.ack_timeout_ms = ack_timeout_ms
        self.ack_grace_ms = ack_grace_ms
        self.acks_enabled = True
        self.retries_enabled = True
        self._max_retries = DEFAULT_MAX_RETRIES
        self._retry_delay_ms = DEFAULT_RETRY_DELAY_MS

        self.on_send_status: Optional[SendStatusHook] = None
        self.on_send_failure: Optional[SendFailureHook] = None

    # ---- settings ----

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @max_retries.setter
    def max_retries(self, count: int) -> None:
        self._max_retries = clamp_retries(count)

    @property
    def retry_delay_ms(self) -> int:
        return self._retry_delay_ms

    @retry_delay_ms.setter
    def retry_delay_ms(self, delay_ms: int) -> None:
        self._retry_delay_ms = clamp_retry_delay(delay_ms)

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def expects_ack(self, kind: MessageKind) -> bool:
        if kind in RESPONSE_KINDS:
            return False
        return kind in REQUEST_KINDS or self.acks_enabled

    def is_retry_eligible(self, kind: MessageKind) -> bool:
        return self.retries_enabled and kind in RETRY_KINDS

    def needs_tracking(self, kind: MessageKind) -> bool:
        if kind in RESPONSE_KINDS:
            return False
        if self.expects_ack(kind):
            return True
        # Without acknowledgements only a send-status report can drive a retry
        return self.is_retry_eligible(kind) and self._transport.reports_send_status

    # ---- outbound ----

    def send(
        self,
        target: str,
        envelope: Envelope,
        callback: Optional[CompletionCallback] = None,
        now: Optional[int] = None,
    ) -> SendResult:
        """
        Send an envelope to one board.

        Args:
            target: Board id (must be in the peer registry)
            envelope: Envelope to send; a correlation id is assigned here
            callback: Invoked exactly once with (success, response)
            now: Timestamp in milliseconds

        Returns:
            SendResult; OK means the frame was handed to the medium (or,
            for retry-eligible kinds, that a retry has been scheduled)
        """
        if now is None:
            now = self._clock()

        try:
            address = self._resolve(target)
        except UnknownPeerError as e:
            logger.debug("Send %s: %s", envelope.kind.name, e)
            return SendResult.UNKNOWN_PEER

        kind = envelope.kind
        if not self.needs_tracking(kind):
            return self._send_untracked(target, address, envelope, callback)

        with self._lock:
            try:
                slot = self._claim_slot()
            except CapacityExceededError as e:
                self._stats.increment("capacity_rejections")
                logger.warning("%s, rejecting %s to %s", e, kind.name, target)
                return SendResult.CAPACITY_EXCEEDED

            message_id = new_message_id()
            env = envelope.with_message_id(message_id)
            try:
                data = encode(env, self._transport.max_frame_size)
            except PayloadTooLargeError as e:
                logger.warning("Dropping %s to %s: %s", kind.name, target, e)
                return SendResult.PAYLOAD_TOO_LARGE
            except ValidationError as e:
                logger.warning("Refusing invalid %s to %s: %s", kind.name, target, e)
                return SendResult.INVALID

            slot.message_id = message_id
            slot.target = target
            slot.address = address
            slot.kind = kind
            slot.envelope = env
            slot.data = data
            slot.sent_at = now
            slot.last_sent_at = now
            slot.retry_count = 0
            slot.next_retry_at = None
            slot.callback = callback
            slot.expects_ack = self.expects_ack(kind)
            slot.retry_eligible = self.is_retry_eligible(kind)
            slot.completed = False
            slot.acked_at = 0
            slot.response = None
            slot.state = SlotState.PENDING
            slot.awaiting_status = self._transport.reports_send_status

            try:
                self._transmit(address, data, slot)
            except TransportError as e:
                slot.awaiting_status = False
                self._stats.increment("transport_errors")
                logger.warning("Send %s to %s failed: %s", kind.name, target, e)
                self._notify_failure(slot)
                if slot.retry_eligible and slot.retry_count < self._max_retries:
                    self._attempt_failed(slot, now)
                    self._stats.increment("messages_sent", peer=target)
                    return SendResult.OK
                self._stats.increment("message_failures", peer=target)
                self._free(slot)
                return SendResult.TRANSPORT_ERROR

            self._stats.increment("messages_sent", peer=target)
            self._stats.increment("bytes_sent", len(data))
            if is_verbose():
                logger.debug("TX %s id=%s -> %s", kind.name, message_id, target)
            return SendResult.OK

    def _send_untracked(
        self,
        target: str,
        address: Any,
        envelope: Envelope,
        callback: Optional[CompletionCallback],
    ) -> SendResult:
        try:
            data = encode(envelope, self._transport.max_frame_size)
        except PayloadTooLargeError as e:
            logger.warning("Dropping %s to %s: %s", envelope.kind.name, target, e)
            return SendResult.PAYLOAD_TOO_LARGE
        except ValidationError as e:
            logger.warning("Refusing invalid %s to %s: %s", envelope.kind.name, target, e)
            return SendResult.INVALID
        try:
            self._transmit(address, data, None)
        except TransportError as e:
            self._stats.increment("transport_errors")
            logger.warning("Send %s to %s failed: %s", envelope.kind.name, target, e)
            return SendResult.TRANSPORT_ERROR

        self._stats.increment("messages_sent", peer=target)
        self._stats.increment("bytes_sent", len(data))
        if callback is not None:
            with self._lock:
                self._deferred.append((envelope.kind, callback, True))
        return SendResult.OK

    def send_raw(self, address: Any, envelope: Envelope) -> SendResult:
        """Send an untracked envelope straight to a transport address."""
        try:
            data = encode(envelope, self._transport.max_frame_size)
        except PayloadTooLargeError as e:
            logger.warning("Dropping %s: %s", envelope.kind.name, e)
            return SendResult.PAYLOAD_TOO_LARGE
        except ValidationError as e:
            logger.warning("Refusing invalid %s: %s", envelope.kind.name, e)
            return SendResult.INVALID
        try:
            if address == self._transport.broadcast_address:
                self._transport.broadcast(data)
            else:
                self._transmit(address, data, None)
        except TransportError as e:
            self._stats.increment("transport_errors")
            logger.warning("Send %s to %s failed: %s", envelope.kind.name, address, e)
            return SendResult.TRANSPORT_ERROR
        self._stats.increment("bytes_sent", len(data))
        return SendResult.OK

    def broadcast(self, envelope: Envelope) -> SendResult:
        """Broadcast an untracked envelope to every board."""
        result = self.send_raw(self._transport.broadcast_address, envelope)
        if result:
            self._stats.increment("messages_sent")
        return result

    # ---- notifications (receive path) ----

    def handle_ack(self, sender: str, message_id: Optional[str], now: Optional[int] = None) -> bool:
        """
        Match an acknowledgement to a tracked message.

        Returns:
            True if it completed a pending message
        """
        return self._match(sender, message_id, None, now, request=False)

    def handle_response(self, env: Envelope, now: Optional[int] = None) -> bool:
        """Match a pin read response to its request."""
        return self._match(env.sender, env.message_id, env, now, request=True)

    def _match(
        self,
        sender: str,
        message_id: Optional[str],
        response: Optional[Envelope],
        now: Optional[int],
        request: bool,
    ) -> bool:
        if not message_id:
            return False
        if now is None:
            now = self._clock()
        with self._lock:
            slot = self._find(message_id)
            if slot is None or slot.state is not SlotState.PENDING:
                logger.debug("Ignoring late or unknown %s id=%s from %s",
                              "response" if request else "ack", message_id, sender)
                return False
            if request != (slot.kind in REQUEST_KINDS):
                logger.debug("Ignoring mismatched reply id=%s from %s", message_id, sender)
                return False
            slot.state = SlotState.ACKNOWLEDGED
            slot.acked_at = now
            slot.next_retry_at = None
            slot.awaiting_status = False
            slot.response = response
            self._stats.increment("messages_acked", peer=slot.target)
            self._stats.record_response_time(now - slot.sent_at)
            return True

    def on_send_completed(self, address: Any, success: bool, now: Optional[int] = None) -> None:
        """
        Transport delivery report for the oldest in-flight send to ``address``.
        """
        if now is None:
            now = self._clock()
        with self._lock:
            slot = self._pop_inflight(address)
            if slot is None:
                return
            slot.awaiting_status = False
            if success:
                if not slot.expects_ack:
                    # Delivery confirmation is the only outcome we will get
                    slot.state = SlotState.ACKNOWLEDGED
                    slot.acked_at = now
                    self._stats.increment("messages_acked", peer=slot.target)
                return

            self._notify_failure(slot)
            if slot.retry_eligible and slot.retry_count < self._max_retries:
                self._attempt_failed(slot, now)
            else:
                slot.state = SlotState.FAILED

    # ---- time ----

    def tick(self, now: Optional[int] = None) -> int:
        """
        Run timeouts, due retries and pending completions.

        Returns:
            Number of completion callbacks invoked
        """
        if now is None:
            now = self._clock()

        completions: List[Tuple[Optional[CompletionCallback], bool, Optional[Envelope], TrackedMessage]] = []

        with self._lock:
            for slot in self._slots:
                if slot.state is SlotState.FREE:
                    continue

                if slot.state is SlotState.ACKNOWLEDGED:
                    if not slot.completed:
                        completions.append(self._complete(slot, True))
                    if now - slot.acked_at >= self.ack_grace_ms:
                        self._free(slot)
                    continue

                if slot.state is SlotState.FAILED:
                    completions.append(self._complete(slot, False))
                    self._free(slot)
                    continue

                # PENDING
                if slot.next_retry_at is not None:
                    if now >= slot.next_retry_at:
                        self._retransmit(slot, now)
                    continue

                if slot.expects_ack and now - slot.last_sent_at >= self.ack_timeout_ms:
                    logger.info("%s id=%s to %s timed out (no acknowledgement)",
                                slot.kind.name, slot.message_id, slot.target)
                    self._stats.increment("timeouts", peer=slot.target)
                    self._notify_failure(slot)
                    if slot.retry_eligible and slot.retry_count < self._max_retries:
                        self._attempt_failed(slot, now)
                    else:
                        completions.append(self._complete(slot, False))
                        self._free(slot)
                    continue

                if slot.awaiting_status and now - slot.last_sent_at >= self.ack_timeout_ms:
                    logger.info("%s id=%s to %s timed out (no send report)",
                                slot.kind.name, slot.message_id, slot.target)
                    self._stats.increment("timeouts", peer=slot.target)
                    slot.awaiting_status = False
                    self._notify_failure(slot)
                    if slot.retry_eligible and slot.retry_count < self._max_retries:
                        self._attempt_failed(slot, now)
                    else:
                        completions.append(self._complete(slot, False))
                        self._free(slot)

            deferred = list(self._deferred)
            self._deferred.clear()

        fired = 0
        for callback, success, response, slot in completions:
            self._report_status(slot, success)
            if callback is not None:
                fired += 1
                self._invoke(callback, success, response)
        for _, callback, success in deferred:
            fired += 1
            self._invoke(callback, success, None)
        return fired

    # ---- cancellation ----

    def clear_callbacks(self, kind: Optional[MessageKind] = None) -> int:
        """Null the completion callback of every live entry (of one kind)."""
        with self._lock:
            cleared = 0
            for slot in self._slots:
                if slot.state is not SlotState.FREE and (kind is None or slot.kind == kind):
                    if slot.callback is not None:
                        slot.callback = None
                        cleared += 1
            # Untracked sends whose success is only waiting for the next tick
            kept = [d for d in self._deferred if kind is not None and d[0] != kind]
            cleared += len(self._deferred) - len(kept)
            self._deferred = deque(kept)
            return cleared

    # ---- inspection ----

    def pending(self) -> List[TrackedMessage]:
        """Snapshot of entries still awaiting an outcome."""
        with self._lock:
            return [s for s in self._slots if s.state is SlotState.PENDING]

    def in_use(self) -> int:
        with self._lock:
            return sum(1 for s in self._slots if s.state is not SlotState.FREE)

    def get(self, message_id: str) -> Optional[TrackedMessage]:
        with self._lock:
            return self._find(message_id)

    # ---- internals (caller holds the lock) ----

    def _resolve(self, target: str) -> Any:
        address = self._peers.lookup_address(target)
        if address is None:
            raise UnknownPeerError(target)
        return address

    def _claim_slot(self) -> TrackedMessage:
        for slot in self._slots:
            if slot.state is SlotState.FREE:
                return slot
        raise CapacityExceededError("Tracking table", len(self._slots))

    def _find(self, message_id: str) -> Optional[TrackedMessage]:
        for slot in self._slots:
            if slot.state is not SlotState.FREE and slot.message_id == message_id:
                return slot
        return None

    def _transmit(self, address: Any, data: bytes, slot: Optional[TrackedMessage]) -> None:
        # Recorded before the hand-off so a synchronous report finds it
        queue = None
        entry = (slot.message_id, slot.retry_count) if slot is not None else None
        if self._transport.reports_send_status:
            with self._lock:
                queue = self._inflight.get(address)
                if queue is None:
                    queue = self._inflight[address] = deque()
                queue.append(entry)
        try:
            self._transport.send_to(address, data)
        except TransportError:
            if queue is not None:
                with self._lock:
                    if queue and queue[-1] == entry:
                        queue.pop()
            raise

    def _pop_inflight(self, address: Any) -> Optional[TrackedMessage]:
        """Tracked entry the next completion report for ``address`` belongs to."""
        queue = self._inflight.get(address)
        if not queue:
            return None
        entry = queue.popleft()
        if not queue:
            del self._inflight[address]
        if entry is None:
            return None
        message_id, attempt = entry
        slot = self._find(message_id)
        if slot is None or slot.state is not SlotState.PENDING or not slot.awaiting_status:
            return None
        # A report for an attempt that already timed out
        if slot.retry_count != attempt:
            return None
        return slot

    def _attempt_failed(self, slot: TrackedMessage, now: int) -> None:
        slot.retry_count += 1
        slot.next_retry_at = now + self._retry_delay_ms
        logger.debug("Retry %d/%d of %s id=%s to %s scheduled at %d",
                     slot.retry_count, self._max_retries, slot.kind.name,
                     slot.message_id, slot.target, slot.next_retry_at)

    def _retransmit(self, slot: TrackedMessage, now: int) -> None:
        slot.next_retry_at = None
        slot.last_sent_at = now
        # Follow the board if its address changed since the first attempt
        address = self._peers.lookup_address(slot.target)
        if address is not None:
            slot.address = address
        self._stats.increment("retries", peer=slot.target)
        slot.awaiting_status = self._transport.reports_send_status
        try:
            self._transmit(slot.address, slot.data, slot)
        except TransportError as e:
            slot.awaiting_status = False
            self._stats.increment("transport_errors")
            logger.warning("Retry of %s to %s failed: %s", slot.kind.name, slot.target, e)
            self._notify_failure(slot)
            if slot.retry_count < self._max_retries:
                self._attempt_failed(slot, now)
            else:
                slot.state = SlotState.FAILED
            return
        logger.info("Retransmitted %s id=%s to %s (attempt %d)",
                    slot.kind.name, slot.message_id, slot.target, slot.retry_count + 1)

    def _complete(self, slot: TrackedMessage, success: bool):
        callback, slot.callback = slot.callback, None
        slot.completed = True
        if not success:
            self._stats.increment("message_failures", peer=slot.target)
        info = TrackedMessage(
            message_id=slot.message_id, target=slot.target, kind=slot.kind,
            envelope=slot.envelope,
        )
        return callback, success, slot.response, info

    def _free(self, slot: TrackedMessage) -> None:
        slot.state = SlotState.FREE
        slot.callback = None
        slot.envelope = None
        slot.response = None
        slot.data = b""
        slot.next_retry_at = None
        slot.awaiting_status = False

    def _notify_failure(self, slot: TrackedMessage) -> None:
        hook = self.on_send_failure
        if hook is None:
            return
        try:
            hook(slot.target, slot.kind, slot.pin, slot.value)
        except Exception:
            logger.exception("Send failure hook raised")

    def _report_status(self, slot: TrackedMessage, success: bool) -> None:
        hook = self.on_send_status
        if hook is None:
            return
        try:
            hook(slot.target, slot.kind, success)
        except Exception:
            logger.exception("Send status hook raised")

    @staticmethod
    def _invoke(callback: CompletionCallback, success: bool, response: Optional[Envelope]) -> None:
        try:
            callback(success, response)
        except Exception:
            logger.exception("Completion callback raised")
