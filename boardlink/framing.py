"""
Byte-stream framing for serial links.

Wire format:
    0x7E <escaped payload> 0x7F

Any payload byte equal to START, END or ESCAPE is sent as ESCAPE
followed by the byte XORed with 0x20. A START seen mid-frame restarts
the frame; a frame that outgrows the buffer is dropped.
"""

from typing import List

from .config import FRAME_START, FRAME_END, FRAME_ESCAPE, FRAME_XOR, MAX_FRAME_SIZE
from .exceptions import PayloadTooLargeError

_RESERVED = (FRAME_START, FRAME_END, FRAME_ESCAPE)


def escape(payload: bytes) -> bytes:
    """Escape reserved bytes in a payload."""
    out = bytearray()
    for b in payload:
        if b in _RESERVED:
            out.append(FRAME_ESCAPE)
            out.append(b ^ FRAME_XOR)
        else:
            out.append(b)
    return bytes(out)


def unescape(body: bytes) -> bytes:
    """Reverse escape(). A trailing lone ESCAPE byte is discarded."""
    out = bytearray()
    pending = False
    for b in body:
        if pending:
            out.append(b ^ FRAME_XOR)
            pending = False
        elif b == FRAME_ESCAPE:
            pending = True
        else:
            out.append(b)
    return bytes(out)


def frame(payload: bytes, max_size: int = MAX_FRAME_SIZE) -> bytes:
    """
    Wrap a payload for transmission.

    Raises:
        PayloadTooLargeError: If the unescaped payload exceeds max_size
    """
    if len(payload) > max_size:
        raise PayloadTooLargeError(len(payload), max_size)
    return bytes([FRAME_START]) + escape(payload) + bytes([FRAME_END])


class FrameDecoder:
    """
    Incremental receiver for framed byte streams.

    Feed it whatever the serial port returned; it yields each complete
    un-escaped payload once its END marker has been seen.
    """

    def __init__(self, max_size: int = MAX_FRAME_SIZE):
        self._max_size = max_size
        self._buf = bytearray()
        self._in_frame = False
        self._escaped = False
        self.dropped = 0

    def reset(self) -> None:
        self._buf.clear()
        self._in_frame = False
        self._escaped = False

    def feed(self, data: bytes) -> List[bytes]:
        """
        Consume received bytes.

        Returns:
            List of complete payloads (possibly empty)
        """
        frames: List[bytes] = []
        for b in data:
            if b == FRAME_START:
                if self._in_frame and self._buf:
                    self.dropped += 1
                self._buf.clear()
                self._in_frame = True
                self._escaped = False
                continue

            if not self._in_frame:
                continue  # Noise between frames

            if self._escaped:
                self._escaped = False
                self._append(b ^ FRAME_XOR)
            elif b == FRAME_ESCAPE:
                self._escaped = True
            elif b == FRAME_END:
                if self._buf:
                    frames.append(bytes(self._buf))
                self._buf.clear()
                self._in_frame = False
            else:
                self._append(b)
        return frames

    def _append(self, b: int) -> None:
        if len(self._buf) >= self._max_size:
            # Overflow: drop and wait for the next START
            self.dropped += 1
            self.reset()
            return
        self._buf.append(b)
