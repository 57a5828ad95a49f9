# swarmcanary/common/config.py
"""
Global settings for SwarmCanary
"""
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

# Network
DEFAULT_HOST = "127.0.0.1"
BIND_HOST = "0.0.0.0"
TRACKER_PORT = 3000
PEER_PORT = 16384

# Tracker
ANNOUNCE_PATH = "/announce"
ANNOUNCE_INTERVAL = 300  # seconds
PEER_TTL = ANNOUNCE_INTERVAL * 2
TRACKER_MAX_PEERS_RETURNED = 50
REQUEST_TIMEOUT = 10

# Peer listener
HANDSHAKE_TIMEOUT = 10
MAX_CONNECTIONS = 64
PEER_ID_PREFIX = b"-SC0100-"

# Content hash
PIECE_LENGTH = 16384
DESCRIPTOR_FILE = "file.torrent"

# Canary
NOTIFY_COOLDOWN = 60  # seconds
NOTIFY_COMPLETION_CHECK = 0.5
IP_PLACEHOLDER = "%IP"
LOOPBACK_ADDRESSES = ("127.0.0.1", "::1")

# Shutdown
SHUTDOWN_GRACE = 5

# Logs
LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = LOG_LEVEL) -> logging.Logger:
    """Configures the root logger for the launcher"""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger


def announce_url(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"http://{host}:{port}{ANNOUNCE_PATH}"


@dataclass
class CanaryConfig:
    """Settings for one canary run"""
    info_hash: bytes
    notify_command: str
    host: str = DEFAULT_HOST
    tracker_port: int = TRACKER_PORT
    peer_port: int = PEER_PORT
    expected_addresses: Iterable[str] = field(default_factory=tuple)
    include_defaults: bool = True
    bind_host: str = BIND_HOST
    announce_interval: int = ANNOUNCE_INTERVAL
    peer_ttl: Optional[float] = None
    handshake_timeout: float = HANDSHAKE_TIMEOUT
    request_timeout: float = REQUEST_TIMEOUT
    cooldown: float = NOTIFY_COOLDOWN
    max_peers: int = TRACKER_MAX_PEERS_RETURNED

    def __post_init__(self):
        if self.peer_ttl is None:
            self.peer_ttl = self.announce_interval * 2

    def expected_set(self) -> FrozenSet[str]:
        """
        Normalized set of addresses that must not fire the canary

        Returns:
            The configured addresses plus, unless disabled, the advertised
            host and the loopback addresses
        """
        # imported here to keep config free of import cycles
        from ..canary.evaluator import normalize_address

        addresses = list(self.expected_addresses)
        if self.include_defaults:
            addresses.extend(LOOPBACK_ADDRESSES)
            addresses.append(self.host)
        return frozenset(normalize_address(a) for a in addresses)

    def announce_url(self) -> str:
        return announce_url(self.host, self.tracker_port)
