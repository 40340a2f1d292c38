"""
Envelope protocol for BoardLink.

Every frame carries one JSON object with a common header (sender, type,
optional messageId) and kind-specific fields:

    PIN_CONTROL, PIN_PUBLISH   pin, value
    PIN_SUBSCRIBE              pin
    PIN_READ_REQUEST           pin, messageId
    PIN_READ_RESPONSE          pin, value, success, messageId
    TOPIC_MESSAGE              topic, message
    DIRECT_MESSAGE             message
    SERIAL_DATA                data
    ACKNOWLEDGEMENT            messageId (the id being acknowledged)
    DISCOVERY, DISCOVERY_RESPONSE  header only

Decoding never raises anything but MalformedFrameError, and encoding
refuses to produce a frame larger than the transport allows.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict
from enum import IntEnum
from typing import Optional, Tuple

from .config import MAX_FRAME_SIZE, MAX_ID_LEN, MAX_PIN, MAX_PIN_VALUE
from .exceptions import MalformedFrameError, PayloadTooLargeError, ValidationError


class MessageKind(IntEnum):
    """Wire message types."""
    PIN_CONTROL = 1
    PIN_SUBSCRIBE = 2
    PIN_PUBLISH = 3
    TOPIC_MESSAGE = 4
    SERIAL_DATA = 5
    DIRECT_MESSAGE = 6
    DISCOVERY = 7
    DISCOVERY_RESPONSE = 8
    ACKNOWLEDGEMENT = 9
    PIN_READ_REQUEST = 10
    PIN_READ_RESPONSE = 11


# Kind -> (required payload fields, messageId required)
_REQUIRED = {
    MessageKind.PIN_CONTROL: (("pin", "value"), False),
    MessageKind.PIN_SUBSCRIBE: (("pin",), False),
    MessageKind.PIN_PUBLISH: (("pin", "value"), False),
    MessageKind.TOPIC_MESSAGE: (("topic", "message"), False),
    MessageKind.SERIAL_DATA: (("data",), False),
    MessageKind.DIRECT_MESSAGE: (("message",), False),
    MessageKind.DISCOVERY: ((), False),
    MessageKind.DISCOVERY_RESPONSE: ((), False),
    MessageKind.ACKNOWLEDGEMENT: ((), True),
    MessageKind.PIN_READ_REQUEST: (("pin",), True),
    MessageKind.PIN_READ_RESPONSE: (("pin", "value", "success"), True),
}

# Optional payload fields that are emitted only when set
_PAYLOAD_FIELDS = ("pin", "value", "topic", "message", "data", "success")


@dataclass(frozen=True)
class Envelope:
    """One decoded (or to-be-encoded) frame."""

    sender: str
    kind: MessageKind
    message_id: Optional[str] = None
    pin: Optional[int] = None
    value: Optional[int] = None
    topic: Optional[str] = None
    message: Optional[str] = None
    data: Optional[str] = None
    success: Optional[bool] = None

    def payload(self) -> dict:
        """Kind-specific fields that are set."""
        d = asdict(self)
        return {k: d[k] for k in _PAYLOAD_FIELDS if d[k] is not None}

    def with_message_id(self, message_id: Optional[str]) -> "Envelope":
        """Copy of this envelope carrying a different correlation id."""
        return Envelope(
            sender=self.sender,
            kind=self.kind,
            message_id=message_id,
            pin=self.pin,
            value=self.value,
            topic=self.topic,
            message=self.message,
            data=self.data,
            success=self.success,
        )


def _is_int(v) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _check_bounded_str(name: str, v, max_len: int = MAX_ID_LEN, allow_empty: bool = False) -> None:
    if not isinstance(v, str):
        raise ValidationError(f"{name} must be a string")
    if not allow_empty and not v:
        raise ValidationError(f"{name} must not be empty")
    if len(v) > max_len:
        raise ValidationError(f"{name} longer than {max_len} characters")


def validate(env: Envelope) -> None:
    """
    Check that an envelope carries every field its kind requires.

    Raises:
        ValidationError: On a missing or out-of-range field
    """
    try:
        kind = MessageKind(env.kind)
    except ValueError:
        raise ValidationError(f"unknown message type {env.kind!r}")

    _check_bounded_str("sender", env.sender)

    required, needs_id = _REQUIRED[kind]
    if needs_id and not env.message_id:
        raise ValidationError(f"{kind.name} requires messageId")
    if env.message_id is not None and not isinstance(env.message_id, str):
        raise ValidationError("messageId must be a string")

    for name in required:
        if getattr(env, name) is None:
            raise ValidationError(f"{kind.name} requires '{name}'")

    if env.pin is not None and not (_is_int(env.pin) and 0 <= env.pin <= MAX_PIN):
        raise ValidationError(f"pin out of range: {env.pin!r}")
    if env.value is not None and not (_is_int(env.value) and 0 <= env.value <= MAX_PIN_VALUE):
        raise ValidationError(f"value out of range: {env.value!r}")
    if env.success is not None and not isinstance(env.success, bool):
        raise ValidationError("success must be a boolean")
    if env.topic is not None:
        _check_bounded_str("topic", env.topic)
    for name in ("message", "data"):
        v = getattr(env, name)
        if v is not None and not isinstance(v, str):
            raise ValidationError(f"{name} must be a string")


def encode(env: Envelope, max_size: int = MAX_FRAME_SIZE) -> bytes:
    """
    Serialize an envelope to its wire form.

    Args:
        env: Envelope to encode
        max_size: Transport frame ceiling in bytes

    Returns:
        UTF-8 JSON bytes

    Raises:
        ValidationError: If the envelope is structurally invalid
        PayloadTooLargeError: If the encoded frame would exceed max_size
    """
    validate(env)

    obj = {"sender": env.sender, "type": int(env.kind)}
    if env.message_id is not None:
        obj["messageId"] = env.message_id
    obj.update(env.payload())

    raw = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(raw) > max_size:
        raise PayloadTooLargeError(len(raw), max_size)
    return raw


def decode(raw: bytes) -> Envelope:
    """
    Parse a received frame.

    Trailing NUL bytes are ignored. Anything that is not a complete,
    well-typed envelope raises MalformedFrameError.
    """
    if not isinstance(raw, (bytes, bytearray)):
        raise MalformedFrameError("frame is not bytes", reason="type")

    raw = bytes(raw).rstrip(b"\x00")
    if not raw:
        raise MalformedFrameError("empty frame", reason="empty")

    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedFrameError(f"not a JSON envelope: {e}", reason="syntax")

    if not isinstance(obj, dict):
        raise MalformedFrameError("envelope is not an object", reason="structure")

    sender = obj.get("sender")
    kind_raw = obj.get("type")
    if sender is None or kind_raw is None:
        raise MalformedFrameError("missing sender or type", reason="header")
    if not _is_int(kind_raw):
        raise MalformedFrameError(f"bad type field {kind_raw!r}", reason="header")
    try:
        kind = MessageKind(kind_raw)
    except ValueError:
        raise MalformedFrameError(f"unknown message type {kind_raw}", reason="type")

    env = Envelope(
        sender=sender,
        kind=kind,
        message_id=obj.get("messageId"),
        pin=obj.get("pin"),
        value=obj.get("value"),
        topic=obj.get("topic"),
        message=obj.get("message"),
        data=obj.get("data"),
        success=obj.get("success"),
    )

    try:
        validate(env)
    except ValidationError as e:
        raise MalformedFrameError(str(e), reason="fields")
    return env


def try_decode(raw: bytes) -> Tuple[Optional[Envelope], Optional[str]]:
    """Decode without raising. Returns (envelope, None) or (None, reason)."""
    try:
        return decode(raw), None
    except MalformedFrameError as e:
        return None, e.reason
