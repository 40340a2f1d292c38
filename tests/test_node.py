"""
Tests for boardlink.node module (end-to-end over the loopback medium).
"""

import json
import threading
import time

import pytest

from boardlink.config import RuntimeConfig
from boardlink.envelope import Envelope, MessageKind, decode, encode
from boardlink.exceptions import InvalidBoardIdError
from boardlink.node import BoardLink, validate_board_id
from boardlink.reliability import SendResult
from boardlink.transport import LoopbackTransport

from conftest import run_for, settle


class TestBoardId:
    """Tests for board id validation."""

    @pytest.mark.parametrize("board_id", ["", "x" * 32, "broadcast", None])
    def test_invalid(self, board_id):
        """Test empty, overlong and reserved ids are rejected."""
        with pytest.raises(InvalidBoardIdError):
            validate_board_id(board_id)

    def test_valid(self):
        """Test a normal id passes through."""
        assert validate_board_id("x" * 31) == "x" * 31


class TestLifecycle:
    """Tests for begin(), end() and tick()."""

    def test_begin_end(self, medium, clock):
        """Test a node connects and disconnects."""
        node = BoardLink("solo", medium.create_transport(), clock=clock)
        assert not node.is_connected()
        assert node.begin()
        assert node.is_connected()
        node.end()
        assert not node.is_connected()

    def test_begin_reports_init_failure(self, medium, clock):
        """Test a transport that cannot open makes begin() return False."""
        medium.create_transport("02:00:00:00:00:aa").open()
        node = BoardLink("dup", LoopbackTransport(medium, "02:00:00:00:00:aa"), clock=clock)
        assert not node.begin()
        assert not node.is_connected()

    def test_not_connected(self, medium, clock):
        """Test operations before begin() report NOT_CONNECTED."""
        node = BoardLink("idle", medium.create_transport(), clock=clock)
        assert node.control_remote_pin("x", 1, 1) is SendResult.NOT_CONNECTED
        assert node.publish_topic("t", "m") is SendResult.NOT_CONNECTED

    def test_from_config(self, medium):
        """Test delivery settings are taken from a RuntimeConfig."""
        config = RuntimeConfig(board_id="cfg", acknowledgements=False, retries=False,
                               max_retries=99, retry_delay_ms=20, log_to_file=False)
        node = BoardLink.from_config(config, medium.create_transport())
        assert node.board_id == "cfg"
        assert not node.acknowledgements_enabled()
        assert not node.engine.retries_enabled
        assert node.engine.max_retries == 10
        assert node.engine.retry_delay_ms == 50


class TestDiscovery:
    """Tests for discovery through the node API."""

    def test_pair_discovers(self, pair):
        """Test two boards list each other."""
        a, b = pair
        assert a.available_boards() == ["board-b"]
        assert a.available_boards_count() == 1
        assert a.available_board_name(0) == "board-b"
        assert a.available_board_name(1) is None

    def test_discovered_callback(self, make_node, medium):
        """Test the callback fires once per board."""
        seen = []
        a = make_node("a")
        a.on_board_discovered(seen.append)
        b = make_node("b")
        settle(medium, [a, b])
        a.discover_now()
        b.discover_now()
        settle(medium, [a, b])
        assert seen == ["b"]

    def test_late_joiner_found_by_periodic_announcement(self, make_node, medium, clock):
        """Test a board started later is found within one interval."""
        a = make_node("a")
        settle(medium, [a])
        b = make_node("b")
        run_for(medium, clock, [a, b], 100)
        assert a.is_board_available("b")
        assert b.is_board_available("a")


class TestPinControl:
    """Tests for remote pin control."""

    def test_control_with_confirmation(self, pair, medium):
        """Test a pin is written and the sender is told once."""
        a, b = pair
        confirmations = []

        result = a.control_remote_pin("board-b", 13, 1, lambda *args: confirmations.append(args))
        settle(medium, [a, b])

        assert result is SendResult.OK
        assert b.pins.level(13) == 1
        assert confirmations == [("board-b", 13, 1, True)]

    def test_unknown_board(self, pair):
        """Test control of an unknown board."""
        a, _ = pair
        assert a.control_remote_pin("ghost", 1, 1) is SendResult.UNKNOWN_PEER

    def test_invalid_pin(self, pair):
        """Test out-of-range pins are refused locally."""
        a, _ = pair
        assert a.control_remote_pin("board-b", 300, 1) is SendResult.INVALID
        assert a.control_remote_pin("board-b", 1, 256) is SendResult.INVALID

    def test_handler_instead_of_write(self, pair, medium):
        """Test a pin-control handler replaces the default write."""
        a, b = pair
        got = []
        b.handle_pin_control(lambda *args: got.append(args))

        a.control_remote_pin("board-b", 7, 1)
        settle(medium, [a, b])

        assert got == [("board-a", 7, 1)]
        assert b.pins.writes == []

        b.stop_handling_pin_control()
        a.control_remote_pin("board-b", 7, 0)
        settle(medium, [a, b])
        assert b.pins.writes == [(7, 0)]

    def test_accept_pin_control_from_notifies_board(self, pair, medium):
        """Test accepting control sends PIN_SUBSCRIBE to the board."""
        a, b = pair
        subscribed = []
        a.on_pin_subscribe(lambda *args: subscribed.append(args))

        assert b.accept_pin_control_from("board-a", 5)
        settle(medium, [a, b])

        assert subscribed == [("board-b", 5)]

    def test_ack_lost_reports_failure(self, pair, medium, clock):
        """Test a board with acknowledgements off never confirms."""
        a, b = pair
        b.enable_acknowledgements(False)
        a.enable_retries(False)
        confirmations = []

        a.control_remote_pin("board-b", 2, 1, lambda *args: confirmations.append(args))
        run_for(medium, clock, [a, b], 5100)

        assert b.pins.level(2) == 1
        assert confirmations == [("board-b", 2, 1, False)]

    def test_unreachable_retries_twice(self, pair, medium, clock):
        """Test retry count against a board that never receives."""
        a, b = pair
        a.set_max_retries(2)
        a.set_retry_delay(100)
        medium.set_reachable(b.transport.address, False)
        outcome = []
        failures = []
        a.on_send_failure(lambda *args: failures.append(args))

        a.control_remote_pin("board-b", 7, 1, lambda *args: outcome.append((clock.now, args)))
        start = clock.now
        run_for(medium, clock, [a, b], 1000)

        frames = medium.frames_between(a.transport.address, b.transport.address)
        attempts = [f for f in frames if decode(f).kind == MessageKind.PIN_CONTROL]
        assert len(attempts) == 3
        assert len(outcome) == 1
        fired_at, args = outcome[0]
        assert args == ("board-b", 7, 1, False)
        assert fired_at - start >= 200
        assert len(failures) == 3

    def test_clear_confirm_callbacks(self, pair, medium):
        """Test pending confirmations can be dropped."""
        a, b = pair
        confirmations = []
        a.control_remote_pin("board-b", 1, 1, lambda *args: confirmations.append(args))

        assert a.clear_remote_pin_confirm_callbacks() == 1
        settle(medium, [a, b])

        assert confirmations == []
        assert b.pins.level(1) == 1


class TestPinRead:
    """Tests for remote pin reads."""

    def test_async_read(self, pair, medium):
        """Test an asynchronous read."""
        a, b = pair
        b.pins.set_input(4, 1)
        reads = []

        a.read_remote_pin("board-b", 4, lambda *args: reads.append(args))
        settle(medium, [a, b])

        assert reads == [("board-b", 4, 1, True)]

    def test_read_handler(self, pair, medium):
        """Test a read handler answers requests."""
        a, b = pair
        b.handle_pin_read_requests(lambda board, pin: 42 if pin == 9 else None)
        reads = []

        a.read_remote_pin("board-b", 9, lambda *args: reads.append(args))
        a.read_remote_pin("board-b", 8, lambda *args: reads.append(args))
        settle(medium, [a, b])

        assert reads == [("board-b", 9, 42, True), ("board-b", 8, 0, False)]

        b.stop_handling_pin_read_requests()
        b.pins.set_input(9, 1)
        a.read_remote_pin("board-b", 9, lambda *args: reads.append(args))
        settle(medium, [a, b])
        assert reads[-1] == ("board-b", 9, 1, True)

    def test_read_handler_bad_value(self, pair, medium):
        """Test a handler returning a non-level answers with a failed read."""
        a, b = pair
        b.handle_pin_read_requests(lambda board, pin: "high" if pin == 9 else 300)
        reads = []

        a.read_remote_pin("board-b", 9, lambda *args: reads.append(args))
        a.read_remote_pin("board-b", 8, lambda *args: reads.append(args))
        settle(medium, [a, b])

        assert reads == [("board-b", 9, 0, False), ("board-b", 8, 0, False)]

    def test_read_timeout(self, pair, medium, clock):
        """Test a read that is never answered fails once."""
        a, b = pair
        b.end()
        reads = []

        a.read_remote_pin("board-b", 4, lambda *args: reads.append(args))
        run_for(medium, clock, [a], 5100)

        assert reads == [("board-b", 4, 0, False)]

    def test_sync_read(self, pair, medium):
        """Test the blocking read while the responder runs elsewhere."""
        a, b = pair
        b.pins.set_input(6, 1)
        stop = threading.Event()

        def responder():
            while not stop.is_set():
                b.tick()
                medium.pump()
                time.sleep(0.001)

        worker = threading.Thread(target=responder, daemon=True)
        worker.start()
        try:
            assert a.read_remote_pin_sync("board-b", 6, timeout=2.0) == 1
        finally:
            stop.set()
            worker.join(timeout=2.0)

    def test_sync_read_timeout(self, pair):
        """Test the blocking read gives up with None."""
        a, _ = pair
        started = time.monotonic()
        assert a.read_remote_pin_sync("board-b", 6, timeout=0.1) is None
        assert time.monotonic() - started >= 0.1

    def test_sync_read_unknown_board(self, pair):
        """Test the blocking read returns None at once for an unknown board."""
        a, _ = pair
        assert a.read_remote_pin_sync("ghost", 1, timeout=5.0) is None


class TestPinState:
    """Tests for pin-state broadcasts."""

    def test_listen_for_pin_state(self, make_node, medium):
        """Test filters and the global handler receive broadcasts."""
        a = make_node("a")
        b = make_node("b")
        c = make_node("c")
        settle(medium, [a, b, c])
        filtered, everything = [], []
        b.listen_for_pin_state_from("a", 3, lambda *args: filtered.append(args))
        c.on_pin_state(lambda *args: everything.append(args))

        assert a.broadcast_pin_state(3, 1)
        assert a.broadcast_pin_state(4, 0)
        settle(medium, [a, b, c])

        assert filtered == [("a", 3, 1)]
        assert everything == [("a", 3, 1), ("a", 4, 0)]

        assert b.stop_listening_for_pin_state_from("a", 3)
        a.broadcast_pin_state(3, 0)
        settle(medium, [a, b, c])
        assert filtered == [("a", 3, 1)]


class TestTopics:
    """Tests for topic messaging."""

    def test_publish_reaches_subscribers(self, make_node, medium):
        """Test only subscribed boards receive a topic."""
        a = make_node("a")
        b = make_node("b")
        c = make_node("c")
        settle(medium, [a, b, c])
        got = []
        b.subscribe_topic("sensors", lambda *args: got.append(("b",) + args))
        c.subscribe_topic("other", lambda *args: got.append(("c",) + args))

        assert a.publish_topic("sensors", "temp=21.5")
        settle(medium, [a, b, c])

        assert got == [("b", "a", "sensors", "temp=21.5")]

    def test_unsubscribe(self, pair, medium):
        """Test an unsubscribed handler is not called."""
        a, b = pair
        got = []
        b.subscribe_topic("t", lambda *args: got.append(args))
        assert b.unsubscribe_topic("t")
        a.publish_topic("t", "m")
        settle(medium, [a, b])
        assert got == []
        assert not b.unsubscribe_topic("t")

    def test_subscription_capacity(self, medium, clock):
        """Test subscriptions beyond the table size are refused."""
        node = BoardLink("s", medium.create_transport(), clock=clock, max_subscriptions=2)
        assert node.subscribe_topic("a", lambda *args: None)
        assert node.subscribe_topic("b", lambda *args: None)
        assert not node.subscribe_topic("c", lambda *args: None)

    def test_topic_length(self, pair):
        """Test overlong topics are refused."""
        _, b = pair
        assert not b.subscribe_topic("t" * 32, lambda *args: None)
        assert not b.subscribe_topic("", lambda *args: None)


class TestMessages:
    """Tests for direct messages and serial data."""

    def test_direct_message(self, pair, medium):
        """Test a direct message and its delivery confirmation."""
        a, b = pair
        inbox, sent = [], []
        b.receive_messages_from_boards(lambda *args: inbox.append(args))

        a.send_message_to_board("board-b", "hello", sent.append)
        settle(medium, [a, b])

        assert inbox == [("board-a", "hello")]
        assert sent == [True]

        b.stop_receiving_messages()
        a.send_message_to_board("board-b", "again")
        settle(medium, [a, b])
        assert inbox == [("board-a", "hello")]

    def test_serial_forwarding(self, pair, medium, clock):
        """Test complete lines go out at once and partial lines after idle."""
        a, b = pair
        got = []
        b.receive_serial_data(lambda *args: got.append(args))

        a.feed_serial_input("line one\npart")
        settle(medium, [a, b])
        assert got == [("board-a", "line one")]

        clock.advance(500)
        settle(medium, [a, b])
        assert got == [("board-a", "line one"), ("board-a", "part")]

        b.stop_receiving_serial_data()
        a.forward_serial_data("ignored")
        settle(medium, [a, b])
        assert len(got) == 2


class TestReceivePath:
    """Tests for inbound frame handling."""

    def test_malformed_frames_counted(self, pair):
        """Test garbage is dropped and counted."""
        _, b = pair
        b.on_frame_received("02:00:00:00:00:99", b"\x00garbage")
        b.on_frame_received("02:00:00:00:00:99", b"{\"sender\":\"x\",\"type\":1}")
        assert b.stats.get_stats()["malformed_frames"] == 2

    def test_own_frames_ignored(self, pair):
        """Test frames carrying our own id are dropped."""
        _, b = pair
        before = b.stats.get_stats()["messages_received"]
        b.on_frame_received("x", encode(Envelope("board-b", MessageKind.DISCOVERY)))
        assert b.stats.get_stats()["messages_received"] == before

    def test_unknown_sender_not_registered(self, pair):
        """Test only discovery frames add boards to the registry."""
        _, b = pair
        b.on_frame_received(
            "02:00:00:00:00:77",
            encode(Envelope("stranger", MessageKind.DIRECT_MESSAGE, message="hi")),
        )
        assert not b.is_board_available("stranger")

    def test_ack_queued_for_tracked_frames(self, pair, clock):
        """Test frames with an id are acknowledged on the next tick."""
        a, b = pair
        b.on_frame_received(
            a.transport.address,
            encode(Envelope("board-a", MessageKind.DIRECT_MESSAGE, message_id="m-1",
                            message="hi")),
        )
        [item] = b.responses.drain(clock())
        assert item.envelope.kind == MessageKind.ACKNOWLEDGEMENT
        assert item.envelope.message_id == "m-1"
        assert item.address == a.transport.address


class TestStatus:
    """Tests for diagnostics."""

    def test_network_status(self, pair, medium, clock):
        """Test the status report."""
        a, b = pair
        a.control_remote_pin("board-b", 1, 1)
        settle(medium, [a, b])
        clock.advance(3000)

        status = a.network_status()

        assert status["status"] == "connected"
        assert status["board_id"] == "board-a"
        assert status["peers_count"] == 1
        assert status["peers"][0]["board_id"] == "board-b"
        assert status["peers"][0]["last_seen_seconds"] == 3
        assert status["discovery_phase"] == "warm_up"
        assert status["messages_sent"] >= 1
        assert status["success_rate"] == 100.0
        assert json.loads(a.network_status_json()) == a.network_status()

    def test_send_status_callback(self, pair, medium):
        """Test the status callback sees completions."""
        a, b = pair
        statuses = []
        a.on_send_status(lambda *args: statuses.append(args))
        a.send_message_to_board("board-b", "x")
        settle(medium, [a, b])
        assert statuses == [("board-b", MessageKind.DIRECT_MESSAGE, True)]

    def test_setters_return_clamped_values(self, pair):
        """Test the retry setters report the effective value."""
        a, _ = pair
        assert a.set_max_retries(11) == 10
        assert a.set_retry_delay(1) == 50

    def test_summary(self, pair):
        """Test the summary text."""
        a, _ = pair
        assert "[STATS]" in a.format_summary()

    def test_board_stats_and_reset(self, pair, medium):
        """Test per-board counters and resetting them."""
        a, b = pair
        a.control_remote_pin("board-b", 1, 1)
        settle(medium, [a, b])

        board = a.board_stats("board-b")
        assert board["messages_sent"] >= 1
        assert board["messages_acked"] == 1
        assert a.board_stats("ghost") is None

        a.reset_counters()

        assert a.board_stats("board-b") is None
        assert a.network_status()["messages_sent"] == 0
        assert a.available_boards() == ["board-b"]
