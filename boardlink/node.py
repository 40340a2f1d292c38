"""
BoardLink node: the host-facing API.

A BoardLink object owns one transport and wires the peer registry,
discovery, delivery engine and dispatcher together. Inbound frames are
handled in whatever context the transport reports them; everything that
transmits (discovery announcements, acknowledgements, read responses,
retries) and every completion callback runs inside tick().

Typical use::

    node = BoardLink("board-1", EthernetTransport("eth0"))
    node.begin()
    node.on_board_discovered(lambda board: print("found", board))
    while True:
        node.tick()
        time.sleep(0.01)
"""

from __future__ import annotations

import json
import logging
import time
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from .config import (
    BROADCAST_ID,
    MAX_ID_LEN,
    MAX_PEERS,
    MAX_PIN,
    MAX_PIN_VALUE,
    MAX_SUBSCRIPTIONS,
    MAX_QUEUED_RESPONSES,
    MAX_TRACKED_MESSAGES,
    SERIAL_FORWARD_IDLE_MS,
    SYNC_READ_POLL,
    SYNC_READ_TIMEOUT,
    RuntimeConfig,
)
from .discovery import DiscoveryService
from .dispatch import (
    Dispatcher,
    MessageHandler,
    PinHandler,
    PinReadHandler,
    PinSubscribeHandler,
    ResponseQueue,
    SubscriptionKind,
    SubscriptionTable,
    TopicHandler,
)
from .envelope import Envelope, MessageKind, try_decode
from .exceptions import InvalidBoardIdError, TransportInitError
from .logging_setup import format_block, is_verbose, set_debug, set_verbose
from .peers import PeerTable, monotonic_ms
from .pins import PinBackend, SimulatedPins
from .reliability import DeliveryEngine, SendResult
from .stats import StatsCollector
from .transport import Transport, TransportListener

logger = logging.getLogger(__name__)

# Inbound kinds that are never acknowledged
_NO_ACK_KINDS = frozenset({
    MessageKind.ACKNOWLEDGEMENT,
    MessageKind.DISCOVERY,
    MessageKind.DISCOVERY_RESPONSE,
    MessageKind.PIN_READ_REQUEST,
    MessageKind.PIN_READ_RESPONSE,
})

PinConfirmCallback = Callable[[str, int, int, bool], None]   # (board, pin, value, success)
PinReadCallback = Callable[[str, int, int, bool], None]      # (board, pin, value, success)
SendStatusCallback = Callable[[str, MessageKind, bool], None]
SendFailureCallback = Callable[[str, MessageKind, Optional[int], Optional[int]], None]


def validate_board_id(board_id: str) -> str:
    if not isinstance(board_id, str) or not board_id or len(board_id) > MAX_ID_LEN \
            or board_id == BROADCAST_ID:
        raise InvalidBoardIdError(str(board_id), MAX_ID_LEN)
    return board_id


def _valid_pin(pin: int, value: int = 0) -> bool:
    return (isinstance(pin, int) and not isinstance(pin, bool) and 0 <= pin <= MAX_PIN
            and isinstance(value, int) and not isinstance(value, bool)
            and 0 <= value <= MAX_PIN_VALUE)


class BoardLink(TransportListener):
    """
    One board on the network.

    Args:
        board_id: Identifier announced to other boards (1-31 characters)
        transport: Medium to communicate over
        pins: Local pin backend for default pin actions
        clock: Millisecond monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        board_id: str,
        transport: Transport,
        pins: Optional[PinBackend] = None,
        clock: Callable[[], int] = monotonic_ms,
        max_peers: int = MAX_PEERS,
        max_tracked: int = MAX_TRACKED_MESSAGES,
        max_subscriptions: int = MAX_SUBSCRIPTIONS,
        max_queued_responses: int = MAX_QUEUED_RESPONSES,
    ):
        self.board_id = validate_board_id(board_id)
        self.transport = transport
        self.pins = pins or SimulatedPins()
        self._clock = clock
        self._connected = False
        self._lock = RLock()

        self.stats = StatsCollector()
        self.peers = PeerTable(max_peers, broadcast_address=transport.broadcast_address)
        self.responses = ResponseQueue(max_queued_responses, stats=self.stats)
        self.subscriptions = SubscriptionTable(max_subscriptions)
        self.discovery = DiscoveryService(board_id, self.peers, self.responses, self.stats)
        self.engine = DeliveryEngine(
            board_id, transport, self.peers, self.stats, capacity=max_tracked, clock=clock,
        )
        self.dispatcher = Dispatcher(board_id, self.pins, self.responses, self.subscriptions)

        self._serial_buffer = ""
        self._serial_last_input: Optional[int] = None

    @classmethod
    def from_config(
        cls, config: RuntimeConfig, transport: Transport, pins: Optional[PinBackend] = None
    ) -> "BoardLink":
        """Build a node with delivery settings taken from a RuntimeConfig."""
        node = cls(config.board_id, transport, pins=pins)
        node.enable_acknowledgements(config.acknowledgements)
        node.enable_retries(config.retries)
        node.set_max_retries(config.max_retries)
        node.set_retry_delay(config.retry_delay_ms)
        return node

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def begin(self) -> bool:
        """
        Bring up the transport and start discovery.

        Returns:
            False if the transport could not be initialized
        """
        if self._connected:
            return True
        try:
            self.transport.initialize(self.board_id, self)
        except TransportInitError as e:
            logger.error("Transport initialization failed: %s", e)
            return False

        self.discovery.start(self._clock())
        self._connected = True
        logger.info(
            format_block(
                "BOARDLINK",
                [
                    f"board     : {self.board_id}",
                    f"transport : {type(self.transport).__name__}",
                    f"address   : {self.transport.local_address}",
                    f"acks      : {self.engine.acks_enabled}",
                    f"retries   : {self.engine.retries_enabled} "
                    f"(max={self.engine.max_retries}, delay={self.engine.retry_delay_ms}ms)",
                ],
            )
        )
        return True

    def end(self) -> None:
        """Shut the transport down."""
        if not self._connected:
            return
        self._connected = False
        self.transport.close()
        logger.info("BoardLink %s stopped", self.board_id)

    def is_connected(self) -> bool:
        return self._connected

    def tick(self, now: Optional[int] = None) -> None:
        """
        Advance the node: announce, drain queued responses, run retries
        and timeouts, flush forwarded serial input.
        """
        if not self._connected:
            return
        if now is None:
            now = self._clock()

        if self.discovery.due(now):
            self.engine.broadcast(self.discovery.announcement())

        for item in self.responses.drain(now):
            self.engine.send_raw(item.address, item.envelope)

        self.engine.tick(now)
        self._flush_serial_input(now)

    update = tick

    # =========================================================================
    # Transport notifications
    # =========================================================================

    def on_frame_received(self, address: Any, data: bytes) -> None:
        env, reason = try_decode(data)
        if env is None:
            self.stats.increment("malformed_frames")
            logger.debug("Dropping malformed frame from %s (%s)", address, reason)
            return
        if env.sender == self.board_id:
            return

        now = self._clock()
        self.stats.increment("messages_received", peer=env.sender)
        self.stats.increment("bytes_received", len(data))
        if is_verbose():
            logger.debug("RX %s from %s id=%s", env.kind.name, env.sender, env.message_id)

        kind = env.kind
        if kind == MessageKind.DISCOVERY:
            self.discovery.handle_discovery(env, address, now)
            return
        if kind == MessageKind.DISCOVERY_RESPONSE:
            self.discovery.handle_discovery_response(env, address, now)
            return

        self.peers.touch(env.sender, now)

        if kind == MessageKind.ACKNOWLEDGEMENT:
            self.engine.handle_ack(env.sender, env.message_id, now)
            return
        if kind == MessageKind.PIN_READ_RESPONSE:
            self.engine.handle_response(env, now)
            return

        if env.message_id and kind not in _NO_ACK_KINDS and self.engine.acks_enabled:
            self.responses.push(
                address,
                Envelope(
                    sender=self.board_id,
                    kind=MessageKind.ACKNOWLEDGEMENT,
                    message_id=env.message_id,
                ),
                now,
            )

        self.dispatcher.dispatch(env, address, now)

    def on_send_completed(self, address: Any, success: bool) -> None:
        self.engine.on_send_completed(address, success, self._clock())

    # =========================================================================
    # Discovery
    # =========================================================================

    def on_board_discovered(self, callback: Optional[Callable[[str], None]]) -> None:
        """Register a callback fired once for each newly seen board."""
        self.discovery.on_board_discovered(callback)

    def is_board_available(self, board_id: str) -> bool:
        return board_id in self.peers

    def available_boards_count(self) -> int:
        return len(self.peers)

    def available_board_name(self, index: int) -> Optional[str]:
        """Board id at ``index`` (valid until the registry next changes)."""
        boards = self.peers.list()
        if 0 <= index < len(boards):
            return boards[index].node_id
        return None

    def available_boards(self) -> List[str]:
        return [p.node_id for p in self.peers.list()]

    def discover_now(self) -> None:
        """Announce on the next tick instead of waiting for the interval."""
        self.discovery.request_announcement(self._clock())

    # =========================================================================
    # Pin control
    # =========================================================================

    def control_remote_pin(
        self,
        target: str,
        pin: int,
        value: int,
        callback: Optional[PinConfirmCallback] = None,
    ) -> SendResult:
        """
        Drive a pin on another board.

        The optional callback receives (board, pin, value, success) once.
        """
        if not self._connected:
            return SendResult.NOT_CONNECTED
        if not _valid_pin(pin, value):
            return SendResult.INVALID

        completion = None
        if callback is not None:
            def completion(success, _response):
                callback(target, pin, value, success)

        return self.engine.send(
            target,
            Envelope(sender=self.board_id, kind=MessageKind.PIN_CONTROL, pin=pin, value=value),
            completion,
        )

    def clear_remote_pin_confirm_callbacks(self) -> int:
        """Drop every pending pin-control confirmation callback."""
        return self.engine.clear_callbacks(MessageKind.PIN_CONTROL)

    def read_remote_pin(self, target: str, pin: int, callback: PinReadCallback) -> SendResult:
        """
        Ask another board for a pin level.

        The callback receives (board, pin, value, success) exactly once;
        success is False on timeout or if the board could not read the pin.
        """
        if not self._connected:
            return SendResult.NOT_CONNECTED
        if not _valid_pin(pin):
            return SendResult.INVALID

        def completion(success, response):
            if success and response is not None:
                callback(target, pin, response.value, bool(response.success))
            else:
                callback(target, pin, 0, False)

        return self.engine.send(
            target,
            Envelope(sender=self.board_id, kind=MessageKind.PIN_READ_REQUEST, pin=pin),
            completion,
        )

    def read_remote_pin_sync(
        self, target: str, pin: int, timeout: float = SYNC_READ_TIMEOUT
    ) -> Optional[int]:
        """
        Blocking pin read. Spins tick() until the response arrives.

        Returns:
            The pin value, or None on failure or timeout
        """
        result: Dict[str, Any] = {}

        def on_read(_board, _pin, value, success):
            result["value"] = value if success else None

        if not self.read_remote_pin(target, pin, on_read):
            return None

        deadline = time.monotonic() + timeout
        while "value" not in result and time.monotonic() < deadline:
            self.tick()
            if "value" in result:
                break
            time.sleep(SYNC_READ_POLL)
        return result.get("value")

    def handle_pin_control(self, handler: PinHandler) -> None:
        """Handle every incoming pin-control message with ``handler``."""
        self.dispatcher.pin_control_handler = handler

    def stop_handling_pin_control(self) -> None:
        """Remove the global handler and every accept_pin_control_from filter."""
        self.dispatcher.pin_control_handler = None
        self.subscriptions.clear(SubscriptionKind.PIN_CONTROL)

    def accept_pin_control_from(
        self, board_id: str, pin: int, handler: Optional[PinHandler] = None
    ) -> bool:
        """
        Accept control of a local pin from one board.

        With no handler the pin is written directly. The board is told
        with a PIN_SUBSCRIBE frame when it is known.
        """
        if not _valid_pin(pin):
            return False
        if not self.subscriptions.add_pin(SubscriptionKind.PIN_CONTROL, board_id, pin, handler):
            return False
        if self._connected and board_id in self.peers:
            self.engine.send(
                board_id,
                Envelope(sender=self.board_id, kind=MessageKind.PIN_SUBSCRIBE, pin=pin),
            )
        return True

    def stop_accepting_pin_control_from(self, board_id: str, pin: int) -> bool:
        return self.subscriptions.remove_pin(SubscriptionKind.PIN_CONTROL, board_id, pin) > 0

    def on_pin_subscribe(self, handler: Optional[PinSubscribeHandler]) -> None:
        """Called with (board, pin) when a board accepts control from us."""
        self.dispatcher.pin_subscribe_handler = handler

    def handle_pin_read_requests(self, handler: PinReadHandler) -> None:
        """
        Answer read requests with ``handler(board, pin)``.

        Returning None reports a failed read.
        """
        self.dispatcher.pin_read_handler = handler

    def stop_handling_pin_read_requests(self) -> None:
        """Revert to reading the local pin directly."""
        self.dispatcher.pin_read_handler = None

    def broadcast_pin_state(self, pin: int, value: int) -> SendResult:
        if not self._connected:
            return SendResult.NOT_CONNECTED
        if not _valid_pin(pin, value):
            return SendResult.INVALID
        return self.engine.broadcast(
            Envelope(sender=self.board_id, kind=MessageKind.PIN_PUBLISH, pin=pin, value=value)
        )

    def listen_for_pin_state_from(self, board_id: str, pin: int, handler: PinHandler) -> bool:
        if not _valid_pin(pin):
            return False
        return self.subscriptions.add_pin(SubscriptionKind.PIN_STATE, board_id, pin, handler)

    def stop_listening_for_pin_state_from(self, board_id: str, pin: int) -> bool:
        return self.subscriptions.remove_pin(SubscriptionKind.PIN_STATE, board_id, pin) > 0

    def on_pin_state(self, handler: Optional[PinHandler]) -> None:
        """Receive every pin-state broadcast regardless of board and pin."""
        self.dispatcher.pin_state_handler = handler

    # =========================================================================
    # Topics
    # =========================================================================

    def publish_topic(self, topic: str, message: str) -> SendResult:
        if not self._connected:
            return SendResult.NOT_CONNECTED
        return self.engine.broadcast(
            Envelope(sender=self.board_id, kind=MessageKind.TOPIC_MESSAGE,
                     topic=topic, message=message)
        )

    def subscribe_topic(self, topic: str, handler: TopicHandler) -> bool:
        """Call handler(board, topic, message) for every message on ``topic``."""
        if not topic or len(topic) > MAX_ID_LEN:
            return False
        return self.subscriptions.add_topic(topic, handler)

    def unsubscribe_topic(self, topic: str, handler: Optional[TopicHandler] = None) -> bool:
        return self.subscriptions.remove_topic(topic, handler) > 0

    # =========================================================================
    # Serial data
    # =========================================================================

    def forward_serial_data(self, data: str) -> SendResult:
        if not self._connected:
            return SendResult.NOT_CONNECTED
        return self.engine.broadcast(
            Envelope(sender=self.board_id, kind=MessageKind.SERIAL_DATA, data=data)
        )

    def receive_serial_data(self, handler: MessageHandler) -> None:
        self.dispatcher.serial_handler = handler

    def stop_receiving_serial_data(self) -> None:
        self.dispatcher.serial_handler = None

    def feed_serial_input(self, text: str, now: Optional[int] = None) -> None:
        """
        Buffer local console input for forwarding. Complete lines go out
        on the next tick; a partial line goes out once input has been
        idle for a while.
        """
        if now is None:
            now = self._clock()
        with self._lock:
            self._serial_buffer += text
            self._serial_last_input = now

    def _flush_serial_input(self, now: int) -> None:
        with self._lock:
            if not self._serial_buffer:
                return
            chunks = []
            while "\n" in self._serial_buffer:
                line, self._serial_buffer = self._serial_buffer.split("\n", 1)
                chunks.append(line)
            if (self._serial_buffer and self._serial_last_input is not None
                    and now - self._serial_last_input >= SERIAL_FORWARD_IDLE_MS):
                chunks.append(self._serial_buffer)
                self._serial_buffer = ""
        for chunk in chunks:
            if chunk:
                self.forward_serial_data(chunk)

    # =========================================================================
    # Direct messages
    # =========================================================================

    def send_message_to_board(
        self,
        target: str,
        message: str,
        callback: Optional[Callable[[bool], None]] = None,
    ) -> SendResult:
        if not self._connected:
            return SendResult.NOT_CONNECTED

        completion = None
        if callback is not None:
            def completion(success, _response):
                callback(success)

        return self.engine.send(
            target,
            Envelope(sender=self.board_id, kind=MessageKind.DIRECT_MESSAGE, message=message),
            completion,
        )

    def receive_messages_from_boards(self, handler: MessageHandler) -> None:
        """Call handler(board, message) for every direct message."""
        self.dispatcher.message_handler = handler

    def stop_receiving_messages(self) -> None:
        self.dispatcher.message_handler = None

    # =========================================================================
    # Configuration
    # =========================================================================

    def enable_acknowledgements(self, enable: bool = True) -> None:
        self.engine.acks_enabled = bool(enable)
        logger.info("Acknowledgements %s", "enabled" if enable else "disabled")

    def acknowledgements_enabled(self) -> bool:
        return self.engine.acks_enabled

    def enable_retries(self, enable: bool = True) -> None:
        self.engine.retries_enabled = bool(enable)
        logger.info("Retries %s", "enabled" if enable else "disabled")

    def set_max_retries(self, count: int) -> int:
        """Set the retry count; returns the value after clamping to [0, 10]."""
        self.engine.max_retries = count
        return self.engine.max_retries

    def set_retry_delay(self, delay_ms: int) -> int:
        """Set the retry delay; returns the value after clamping to [50, 10000] ms."""
        self.engine.retry_delay_ms = delay_ms
        return self.engine.retry_delay_ms

    def enable_debug_logging(self, enable: bool = True) -> None:
        set_debug(enable)

    def enable_verbose_logging(self, enable: bool = True) -> None:
        set_verbose(enable)

    # =========================================================================
    # Status
    # =========================================================================

    def on_send_status(self, callback: Optional[SendStatusCallback]) -> None:
        """Called with (board, kind, success) when a tracked message completes."""
        self.engine.on_send_status = callback

    def on_send_failure(self, callback: Optional[SendFailureCallback]) -> None:
        """Called with (board, kind, pin, value) on every failed delivery attempt."""
        self.engine.on_send_failure = callback

    def network_status(self, now: Optional[int] = None) -> Dict[str, Any]:
        if now is None:
            now = self._clock()
        stats = self.stats.get_stats()
        return {
            "status": "connected" if self._connected else "disconnected",
            "board_id": self.board_id,
            "address": str(self.transport.local_address),
            "peers_count": len(self.peers),
            "peers": [
                {
                    "board_id": p.node_id,
                    "address": str(p.address),
                    "last_seen_seconds": p.age_ms(now) // 1000,
                }
                for p in self.peers.list()
            ],
            "discovery_phase": self.discovery.phase(now).name.lower(),
            "tracked_messages": self.engine.in_use(),
            "subscriptions": len(self.subscriptions),
            "messages_sent": stats["messages_sent"],
            "messages_received": stats["messages_received"],
            "message_failures": stats["message_failures"],
            "retries": stats["retries"],
            "success_rate": stats["success_rate"],
            "avg_response_time_ms": stats["avg_response_time_ms"],
        }

    def network_status_json(self, now: Optional[int] = None) -> str:
        return json.dumps(self.network_status(now))

    def format_summary(self) -> str:
        return self.stats.format_summary()

    def board_stats(self, board_id: str) -> Optional[Dict[str, int]]:
        """Message counters for one board, or None if nothing was exchanged with it."""
        return self.stats.get_peer_stats(board_id)

    def reset_counters(self) -> None:
        """Zero every diagnostic counter. Peers and tracked messages are kept."""
        self.stats.reset()
        logger.info("Diagnostic counters reset")
