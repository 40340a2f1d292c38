"""
Serial (UART) transport for BoardLink.

A point-to-point byte stream carrying framed envelopes. There is only
one peer on the other end, so every frame goes out on the same wire and
every inbound frame is attributed to the port itself.
"""

from __future__ import annotations

import threading
from typing import Any, Optional

import serial

from .config import DEFAULT_BAUD_RATE, MAX_FRAME_SIZE
from .exceptions import PayloadTooLargeError, TransportError, TransportInitError
from .framing import FrameDecoder, frame
from .logging_setup import log, log_debug, is_verbose
from .transport import Transport

SERIAL_BROADCAST = "serial:*"


class SerialTransport(Transport):
    """Framed byte-stream transport over pyserial."""

    broadcast_address = SERIAL_BROADCAST
    reports_send_status = False

    def __init__(
        self,
        port: str,
        baud_rate: int = DEFAULT_BAUD_RATE,
        max_frame_size: int = MAX_FRAME_SIZE,
        read_timeout: float = 0.1,
    ):
        super().__init__()
        self.port = port
        self.baud_rate = baud_rate
        self.max_frame_size = max_frame_size
        self._read_timeout = read_timeout
        self._ser: Optional[serial.Serial] = None
        self._decoder = FrameDecoder(max_frame_size)
        self._write_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def local_address(self) -> str:
        return f"serial:{self.port}"

    def open(self) -> None:
        try:
            # serial_for_url also accepts pyserial URLs such as loop:// and socket://
            self._ser = serial.serial_for_url(
                self.port, baudrate=self.baud_rate, timeout=self._read_timeout
            )
        except serial.SerialException as e:
            raise TransportInitError(f"cannot open {self.port}: {e}") from e

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._reader_loop, name=f"boardlink-serial-{self.port}", daemon=True
        )
        self._thread.start()
        log(f"[SERIAL] port={self.port} baud={self.baud_rate}")

    def close(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self._ser is not None:
            self._ser.close()
            self._ser = None
        super().close()

    def broadcast(self, data: bytes) -> None:
        self._write(data)

    def send_to(self, address: Any, data: bytes) -> None:
        self._write(data)

    def _write(self, data: bytes) -> None:
        if self._ser is None:
            raise TransportError("serial port not open")
        try:
            wire = frame(data, self.max_frame_size)
        except PayloadTooLargeError as e:
            raise TransportError(str(e)) from e
        try:
            with self._write_lock:
                self._ser.write(wire)
                self._ser.flush()
        except serial.SerialException as e:
            raise TransportError(f"serial write failed: {e}") from e
        if is_verbose():
            log_debug(f"[SERIAL TX] bytes={len(data)} wire={len(wire)}")

    def _reader_loop(self) -> None:
        while not self._stop.is_set():
            try:
                chunk = self._ser.read(self._ser.in_waiting or 1)
            except serial.SerialException as e:
                log(f"[SERIAL] Read error: {e!r}")
                self._stop.wait(0.5)
                continue
            if not chunk:
                continue
            for payload in self._decoder.feed(chunk):
                if is_verbose():
                    log_debug(f"[SERIAL RX] bytes={len(payload)}")
                try:
                    self._deliver_frame(self.local_address, payload)
                except Exception as e:
                    log(f"[SERIAL] Handler error: {e!r}")
