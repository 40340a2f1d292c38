"""
BoardLink - peer-to-peer messaging for small boards.

Boards discover each other without a coordinator, control and read each
other's pins, and exchange topic, direct and serial messages over a
broadcast medium (raw Ethernet) or a framed serial link, with
acknowledgements and bounded retries on top.
"""

__version__ = "1.0.0"
__author__ = "BoardLink Contributors"

from .envelope import Envelope, MessageKind
from .node import BoardLink
from .reliability import SendResult

__all__ = ["BoardLink", "Envelope", "MessageKind", "SendResult", "__version__"]
