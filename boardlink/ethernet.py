"""
Raw Ethernet transport for BoardLink.

Frames are sent as Ether / BoardLinkHeader / envelope bytes on a lab
EtherType, which gives a broadcast-capable connectionless medium on any
wired or wireless LAN. Raw sockets need root (or CAP_NET_RAW).
"""

from __future__ import annotations

import threading
import time
from typing import Any, Optional

from scapy.all import Packet, Ether, bind_layers, sendp, sniff, get_if_hwaddr
from scapy.fields import StrFixedLenField, ByteField, ShortField

from .config import ETH_TYPE, BL_MAGIC, BL_VERSION, ETH_BROADCAST_MAC, MAX_FRAME_SIZE
from .exceptions import TransportError, TransportInitError
from .logging_setup import log, log_debug, is_verbose
from .transport import Transport


class BoardLinkHeader(Packet):
    """
    BoardLink frame header.

    Fields:
        magic: Protocol magic bytes ("BL")
        version: Protocol version (1)
        length: Length of the envelope that follows
    """

    name = "BoardLink"
    fields_desc = [
        StrFixedLenField("magic", BL_MAGIC, 2),
        ByteField("version", BL_VERSION),
        ShortField("length", 0),
    ]


bind_layers(Ether, BoardLinkHeader, type=ETH_TYPE)


def build_frame(src_mac: str, dst_mac: str, data: bytes) -> Packet:
    """Build the Ethernet frame carrying one envelope."""
    return (
        Ether(dst=dst_mac, src=src_mac, type=ETH_TYPE)
        / BoardLinkHeader(length=len(data))
        / data
    )


def parse_frame(pkt: Any) -> Optional[bytes]:
    """Extract the envelope bytes from a sniffed frame, or None."""
    if not pkt.haslayer(BoardLinkHeader):
        return None
    hdr = pkt[BoardLinkHeader]
    if bytes(hdr.magic) != BL_MAGIC or hdr.version != BL_VERSION:
        return None
    body = bytes(hdr.payload)
    # Ethernet pads short frames; the header length is authoritative
    if hdr.length > len(body):
        return None
    return body[: hdr.length]


class EthernetTransport(Transport):
    """
    Broadcast transport over raw Ethernet.

    Sends do not report delivery status; reliability comes solely from
    application-level acknowledgements.
    """

    broadcast_address = ETH_BROADCAST_MAC
    reports_send_status = False

    def __init__(self, iface: str, max_frame_size: int = MAX_FRAME_SIZE):
        super().__init__()
        self.iface = iface
        self.max_frame_size = max_frame_size
        self._mac: str = ""
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def local_address(self) -> str:
        return self._mac

    def open(self) -> None:
        try:
            self._mac = get_if_hwaddr(self.iface).lower()
        except Exception as e:
            raise TransportInitError(f"cannot open interface {self.iface}: {e}") from e

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._listen_loop, name=f"boardlink-eth-{self.iface}", daemon=True
        )
        self._thread.start()
        log(f"[ETH] iface={self.iface} mac={self._mac} ethertype=0x{ETH_TYPE:04x}")

    def close(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=3.0)
            self._thread = None
        super().close()

    def broadcast(self, data: bytes) -> None:
        self._send(ETH_BROADCAST_MAC, data)

    def send_to(self, address: Any, data: bytes) -> None:
        self._send(str(address), data)

    def _send(self, dst_mac: str, data: bytes) -> None:
        if len(data) > self.max_frame_size:
            raise TransportError(f"frame of {len(data)} bytes exceeds {self.max_frame_size}")
        try:
            sendp(build_frame(self._mac, dst_mac, data), iface=self.iface, verbose=False)
        except OSError as e:
            raise TransportError(f"sendp failed: {e}") from e
        if is_verbose():
            log_debug(f"[ETH TX] -> {dst_mac} bytes={len(data)}")

    def _listen_loop(self) -> None:
        """Background sniffer; hands every BoardLink frame to the listener."""
        bpf = f"ether proto 0x{ETH_TYPE:04x}"

        def handle_packet(pkt):
            try:
                src_mac = pkt[Ether].src.lower()
                if src_mac == self._mac:
                    return
                data = parse_frame(pkt)
                if data is None:
                    return
                if is_verbose():
                    log_debug(f"[ETH RX] <- {src_mac} bytes={len(data)}")
                self._deliver_frame(src_mac, data)
            except Exception as e:
                log(f"[ETH] Handler error: {e!r}")

        while not self._stop.is_set():
            try:
                sniff(iface=self.iface, filter=bpf, store=False, prn=handle_packet,
                      timeout=2, stop_filter=lambda _: self._stop.is_set())
            except Exception as e:
                log(f"[ETH] Sniff error: {e!r}")
                time.sleep(0.5)
