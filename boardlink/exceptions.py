"""
Custom exceptions for BoardLink.

These are raised inside the core and converted at the application
boundary into return values or a single completion callback invocation.
"""


class BoardLinkError(Exception):
    """Base exception for all BoardLink errors."""
    pass


# ---------------- Transport Errors ----------------

class TransportError(BoardLinkError):
    """The medium rejected a send or broadcast."""
    pass


class TransportInitError(TransportError):
    """Transport could not be brought up."""
    pass


# ---------------- Protocol Errors ----------------

class ProtocolError(BoardLinkError):
    """Base class for protocol-related errors."""
    pass


class MalformedFrameError(ProtocolError):
    """Frame could not be decoded into an envelope."""

    def __init__(self, message: str, reason: str = "unknown"):
        super().__init__(message)
        self.reason = reason


class PayloadTooLargeError(ProtocolError):
    """Encoded envelope exceeds the transport frame ceiling."""

    def __init__(self, size: int, max_size: int):
        super().__init__(f"Payload size {size} exceeds maximum {max_size}")
        self.size = size
        self.max_size = max_size


# ---------------- Delivery Errors ----------------

class DeliveryError(BoardLinkError):
    """Base class for delivery-related errors."""
    pass


class UnknownPeerError(DeliveryError):
    """Target board is not in the peer registry."""

    def __init__(self, node_id: str):
        super().__init__(f"Unknown board '{node_id}'")
        self.node_id = node_id


class CapacityExceededError(DeliveryError):
    """A bounded table has no free slot."""

    def __init__(self, table: str, capacity: int):
        super().__init__(f"{table} is full ({capacity} slots)")
        self.table = table
        self.capacity = capacity


# ---------------- Input Validation Errors ----------------

class ValidationError(BoardLinkError):
    """Input validation failed."""
    pass


class InvalidBoardIdError(ValidationError):
    """Board id is empty, too long or reserved."""

    def __init__(self, value: str, max_len: int = 31):
        super().__init__(
            f"Invalid board id '{value}': expected 1-{max_len} characters"
        )
        self.value = value
        self.max_len = max_len

