"""
Entry point for BoardLink.

Run with: python -m boardlink --board-id <id> --iface <interface>
      or: python -m boardlink --board-id <id> --serial-port /dev/ttyUSB0
"""

from __future__ import annotations

import argparse
import atexit
import signal
import sys
import threading
import time
from typing import Optional

from .config import (
    CONFIG_FILE,
    RuntimeConfig,
    apply_config_file,
    clamp_retries,
    clamp_retry_delay,
    load_config_file,
    save_default_config,
)
from .exceptions import InvalidBoardIdError
from .logging_setup import setup_logging, log
from .node import BoardLink
from .transport import Transport

TICK_INTERVAL = 0.01  # Seconds between tick() calls


def _setup_signal_handlers(stop_flag: threading.Event) -> None:
    """Configure signal handlers for graceful shutdown."""

    def _shutdown_handler(signum: int, frame) -> None:
        sig_name = signal.Signals(signum).name
        log(f"[SHUTDOWN] Received {sig_name}, stopping...")
        stop_flag.set()

    signal.signal(signal.SIGTERM, _shutdown_handler)
    signal.signal(signal.SIGINT, _shutdown_handler)


def _stdin_reader(node: BoardLink, stop_flag: threading.Event) -> None:
    """Feed console lines to the node for serial forwarding."""
    for line in sys.stdin:
        if stop_flag.is_set():
            break
        node.feed_serial_input(line)


def build_transport(config: RuntimeConfig) -> Transport:
    """Create the transport selected by the configuration."""
    if config.transport == "serial":
        from .serial_link import SerialTransport
        return SerialTransport(config.serial_port, config.baud_rate)
    from .ethernet import EthernetTransport
    return EthernetTransport(config.iface)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="BoardLink - peer-to-peer board messaging over Ethernet or serial"
    )
    ap.add_argument("--board-id", help="Board identifier (1-31 characters)")
    ap.add_argument("--iface", help="Network interface for the ethernet transport (e.g. eth0)")
    ap.add_argument("--serial-port", help="Serial device; selects the serial transport")
    ap.add_argument("--baud", type=int, help="Serial baud rate (default: 115200)")
    ap.add_argument("--no-acks", action="store_true", help="Disable acknowledgements")
    ap.add_argument("--no-retries", action="store_true", help="Disable pin-control retries")
    ap.add_argument("--max-retries", type=int, help="Retry count (0-10)")
    ap.add_argument("--retry-delay", type=int, help="Retry delay in ms (50-10000)")
    ap.add_argument(
        "--forward-stdin",
        action="store_true",
        help="Broadcast console input as serial data",
    )
    ap.add_argument(
        "--status-interval",
        type=float,
        default=0.0,
        help="Log a network summary every N seconds (0 disables)",
    )
    ap.add_argument("--no-log-file", action="store_true", help="Disable file logging")
    ap.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    ap.add_argument("--config", help=f"Path to config file (default: {CONFIG_FILE})")
    ap.add_argument(
        "--init-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    return ap


def resolve_config(args: argparse.Namespace, file_config: dict) -> RuntimeConfig:
    """File values first, then explicit command line flags on top."""
    config = RuntimeConfig(
        board_id=args.board_id or "",
        iface=args.iface or "",
        serial_port=args.serial_port or "",
        log_to_file=not args.no_log_file,
    )
    apply_config_file(config, file_config)

    if args.serial_port:
        config.transport = "serial"
    elif args.iface:
        config.transport = "ethernet"
    if args.baud:
        config.baud_rate = args.baud
    if args.no_acks:
        config.acknowledgements = False
    if args.no_retries:
        config.retries = False
    if args.max_retries is not None:
        config.max_retries = clamp_retries(args.max_retries)
    if args.retry_delay is not None:
        config.retry_delay_ms = clamp_retry_delay(args.retry_delay)
    if args.log_level:
        config.log_level = args.log_level
    if args.no_log_file:
        config.log_to_file = False
    return config


def main(argv: Optional[list] = None):
    """Main entry point for BoardLink."""
    ap = build_parser()
    args = ap.parse_args(argv)

    if args.init_config:
        config_path = args.config or CONFIG_FILE
        if save_default_config(config_path):
            print(f"Default configuration saved to: {config_path}")
            sys.exit(0)
        print(f"Failed to save configuration to: {config_path}")
        sys.exit(1)

    config = resolve_config(args, load_config_file(args.config))

    if not config.board_id:
        ap.error("--board-id is required (or set 'board_id' in config file)")
    if config.transport == "serial" and not config.serial_port:
        ap.error("--serial-port is required for the serial transport")
    if config.transport == "ethernet" and not config.iface:
        ap.error("--iface is required (or set 'iface' in config file)")

    setup_logging(
        log_to_file=config.log_to_file,
        log_to_console=True,
        log_level=config.log_level,
    )

    try:
        node = BoardLink.from_config(config, build_transport(config))
    except InvalidBoardIdError as e:
        ap.error(str(e))

    if not node.begin():
        print("\nError: transport could not be initialized.")
        print("Raw Ethernet needs root (or CAP_NET_RAW); check the interface or port name.")
        sys.exit(1)

    stop_flag = threading.Event()
    _setup_signal_handlers(stop_flag)
    atexit.register(node.end)

    node.on_board_discovered(lambda board: log(f"[DISCOVERY] New board: {board}"))
    node.receive_messages_from_boards(lambda board, msg: log(f"[MSG] {board}: {msg}"))
    node.receive_serial_data(lambda board, data: print(f"[{board}] {data}"))

    if args.forward_stdin:
        threading.Thread(target=_stdin_reader, args=(node, stop_flag), daemon=True).start()

    last_status = time.monotonic()
    while not stop_flag.is_set():
        node.tick()
        if args.status_interval > 0 and time.monotonic() - last_status >= args.status_interval:
            last_status = time.monotonic()
            log(node.format_summary())
        time.sleep(TICK_INTERVAL)

    node.end()


if __name__ == "__main__":
    main()
