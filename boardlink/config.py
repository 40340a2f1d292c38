"""
Configuration constants for BoardLink.

All protocol constants, capacities, timing parameters and paths are
centralized here, together with the YAML configuration file helpers.
"""

from __future__ import annotations

import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional


# ---------------- Protocol Constants ----------------

ETH_TYPE = 0x88B6  # Lab-only EtherType (not IANA-registered)
BL_MAGIC = b"BL"
BL_VERSION = 1

BROADCAST_ID = "broadcast"  # Reserved node id for the broadcast address
ETH_BROADCAST_MAC = "ff:ff:ff:ff:ff:ff"

MAX_FRAME_SIZE = 250  # Radio medium ceiling (bytes per frame)
MAX_ID_LEN = 31       # Board ids and topics
MAX_PIN = 255
MAX_PIN_VALUE = 255


# ---------------- Table Capacities ----------------

MAX_PEERS = 20
MAX_TRACKED_MESSAGES = 10
MAX_SUBSCRIPTIONS = 20
MAX_QUEUED_RESPONSES = 10


# ---------------- Delivery Timing (milliseconds) ----------------

ACK_TIMEOUT_MS = 5000
ACK_GRACE_MS = 1000  # Acknowledged slots are kept this long before reuse

DEFAULT_MAX_RETRIES = 3
MIN_MAX_RETRIES = 0
MAX_MAX_RETRIES = 10

DEFAULT_RETRY_DELAY_MS = 500
MIN_RETRY_DELAY_MS = 50
MAX_RETRY_DELAY_MS = 10000

QUEUED_RESPONSE_TTL_MS = 5000


# ---------------- Discovery Timing (milliseconds) ----------------

DISCOVERY_WARMUP_INTERVAL_MS = 5000
DISCOVERY_ACTIVE_INTERVAL_MS = 20000
DISCOVERY_STABLE_INTERVAL_MS = 60000
DISCOVERY_ACTIVE_AFTER_MS = 60 * 1000
DISCOVERY_STABLE_AFTER_MS = 300 * 1000


# ---------------- Synchronous Pin Read ----------------

SYNC_READ_TIMEOUT = 5.0   # Seconds
SYNC_READ_POLL = 0.01     # Seconds between tick() calls


# ---------------- Byte-stream Framing ----------------

FRAME_START = 0x7E
FRAME_END = 0x7F
FRAME_ESCAPE = 0x7D
FRAME_XOR = 0x20

DEFAULT_BAUD_RATE = 115200


# ---------------- Serial Forwarding ----------------

SERIAL_FORWARD_IDLE_MS = 500  # Flush a partial line after this much idle time


# ---------------- File Paths ----------------

BASEDIR = os.path.join(os.path.expanduser("~"), ".boardlink")
LOG_DIR = os.path.join(BASEDIR, "logs")
CONFIG_FILE = os.path.join(BASEDIR, "config.yaml")  # YAML configuration file


# ---------------- Logging Configuration ----------------

LOG_FILE = os.path.join(LOG_DIR, "boardlink.log")
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB per log file
LOG_BACKUP_COUNT = 5  # Keep 5 rotated log files


def clamp_retries(count: int) -> int:
    """Bound a retry count to [MIN_MAX_RETRIES, MAX_MAX_RETRIES]."""
    return max(MIN_MAX_RETRIES, min(MAX_MAX_RETRIES, int(count)))


def clamp_retry_delay(delay_ms: int) -> int:
    """Bound a retry delay to [MIN_RETRY_DELAY_MS, MAX_RETRY_DELAY_MS]."""
    return max(MIN_RETRY_DELAY_MS, min(MAX_RETRY_DELAY_MS, int(delay_ms)))


@dataclass
class RuntimeConfig:
    """Runtime configuration that can be modified at startup."""

    board_id: str = ""
    transport: str = "ethernet"  # "ethernet" or "serial"
    iface: str = ""
    serial_port: str = ""
    baud_rate: int = DEFAULT_BAUD_RATE
    acknowledgements: bool = True
    retries: bool = True
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    log_to_file: bool = True
    log_level: str = "INFO"

    def __post_init__(self):
        """Normalize bounded values and ensure directories exist."""
        self.max_retries = clamp_retries(self.max_retries)
        self.retry_delay_ms = clamp_retry_delay(self.retry_delay_ms)
        if self.log_to_file:
            Path(LOG_DIR).mkdir(parents=True, exist_ok=True)


def load_config_file(path: Optional[str] = None) -> dict:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file (defaults to CONFIG_FILE)

    Returns:
        Configuration dict (empty if file doesn't exist or is unreadable)
    """
    import yaml

    config_path = path or CONFIG_FILE

    if not os.path.exists(config_path):
        return {}

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


DEFAULT_CONFIG = """\
# BoardLink Configuration

# Board identifier announced during discovery
# board_id: board-1

# Transport: ethernet or serial
transport: ethernet

# Network interface for the ethernet transport
# iface: eth0

serial:
  # Serial device for the serial transport
  # port: /dev/ttyUSB0
  baud_rate: 115200

# Delivery settings
delivery:
  # Request application-level acknowledgements
  acknowledgements: true
  # Retry pin-control messages on send failure
  retries: true
  # Retry count (0-10)
  max_retries: 3
  # Delay between retries in milliseconds (50-10000)
  retry_delay_ms: 500

# Logging settings
logging:
  # Enable file logging
  to_file: true
  # Log level: DEBUG, INFO, WARNING, ERROR
  level: INFO
"""


def save_default_config(path: Optional[str] = None) -> bool:
    """
    Save default configuration file.

    Args:
        path: Path to config file (defaults to CONFIG_FILE)

    Returns:
        True if saved successfully
    """
    config_path = path or CONFIG_FILE

    try:
        Path(config_path).parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write(DEFAULT_CONFIG)
        return True
    except OSError:
        return False


def apply_config_file(runtime_config: "RuntimeConfig", file_config: dict) -> None:
    """
    Apply file configuration to runtime config.

    File config values are used as defaults, CLI args take precedence.
    String settings are only filled in when still empty; delivery and
    logging settings from the file override the dataclass defaults.
    """
    if not runtime_config.board_id and "board_id" in file_config:
        runtime_config.board_id = str(file_config["board_id"])

    if "transport" in file_config:
        runtime_config.transport = str(file_config["transport"]).lower()

    if not runtime_config.iface and "iface" in file_config:
        runtime_config.iface = file_config["iface"]

    serial_config = file_config.get("serial", {}) or {}
    if not runtime_config.serial_port and "port" in serial_config:
        runtime_config.serial_port = serial_config["port"]
    if "baud_rate" in serial_config:
        runtime_config.baud_rate = int(serial_config["baud_rate"])

    delivery_config = file_config.get("delivery", {}) or {}
    if "acknowledgements" in delivery_config:
        runtime_config.acknowledgements = bool(delivery_config["acknowledgements"])
    if "retries" in delivery_config:
        runtime_config.retries = bool(delivery_config["retries"])
    if "max_retries" in delivery_config:
        runtime_config.max_retries = clamp_retries(delivery_config["max_retries"])
    if "retry_delay_ms" in delivery_config:
        runtime_config.retry_delay_ms = clamp_retry_delay(delivery_config["retry_delay_ms"])

    logging_config = file_config.get("logging", {}) or {}
    if "to_file" in logging_config:
        runtime_config.log_to_file = logging_config["to_file"]
    if "level" in logging_config:
        runtime_config.log_level = logging_config["level"]
