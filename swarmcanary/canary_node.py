# swarmcanary/canary_node.py
"""
Wires the tracker, the peer listener and the canary together
"""
import logging
import signal
import threading
from typing import Iterable

from .canary.evaluator import CanaryEvaluator
from .canary.notifier import Notifier
from .common.config import SHUTDOWN_GRACE, CanaryConfig
from .common.file_utils import HASH_LENGTH
from .common.errors import InvalidHash
from .peer.handshake import generate_peer_id
from .peer.peer_listener import PeerListener
from .tracker.swarm_registry import SwarmRegistry
from .tracker.tracker_server import TrackerServer

logger = logging.getLogger(__name__)


class CanaryNode:
    """Owns the shared state and the lifecycle of both listeners"""

    def __init__(self, config: CanaryConfig, notifier=None):
        if len(config.info_hash) != HASH_LENGTH:
            raise InvalidHash(f"info hash must be {HASH_LENGTH} bytes")

        self.config = config
        self.peer_id = generate_peer_id()
        self.registry = SwarmRegistry(ttl=config.peer_ttl)
        self.evaluator = CanaryEvaluator(
            config.expected_set(),
            notifier if notifier is not None else Notifier(config.notify_command),
            cooldown=config.cooldown,
        )
        self.tracker = TrackerServer(
            info_hash=config.info_hash,
            registry=self.registry,
            on_event=self.evaluator.observe,
            peer_id=self.peer_id,
            host=config.host,
            peer_port=config.peer_port,
            bind_host=config.bind_host,
            port=config.tracker_port,
            interval=config.announce_interval,
            max_peers=config.max_peers,
            request_timeout=config.request_timeout,
        )
        self.peer_listener = PeerListener(
            info_hash=config.info_hash,
            on_event=self.evaluator.observe,
            host=config.bind_host,
            port=config.peer_port,
            peer_id=self.peer_id,
            registry=self.registry,
            handshake_timeout=config.handshake_timeout,
        )
        self._stop_event = threading.Event()
        self.is_running = False

    def start(self):
        """
        Starts the peer listener and the tracker

        Raises:
            OSError: if either port cannot be bound; nothing is left running
        """
        self.peer_listener.start()
        # advertise the real port when an ephemeral one was requested
        self.tracker.peer_port = self.peer_listener.port
        try:
            self.tracker.start()
        except OSError:
            self.peer_listener.stop(grace=0)
            raise

        self.is_running = True
        logger.info(f"Canary watching {self.config.info_hash.hex()}; "
                    f"expected addresses: {', '.join(sorted(self.evaluator.expected)) or 'none'}")

    def stop(self, grace: float = SHUTDOWN_GRACE):
        """Stops both listeners; in-flight handshakes get the grace period"""
        if not self.is_running:
            return
        self.is_running = False
        self.tracker.stop()
        self.peer_listener.stop(grace=grace)
        self._stop_event.set()
        logger.info("Canary stopped")

    def request_stop(self, *_):
        self._stop_event.set()

    def serve_forever(self):
        """Blocks until interrupted (Ctrl+C, SIGTERM or request_stop)"""
        self._setup_signal_handlers()
        try:
            while not self._stop_event.wait(1):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            self.stop()

    def _setup_signal_handlers(self):
        # signal handlers can only be installed from the main thread
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, self.request_stop)


def start(info_hash: bytes, expected_addresses: Iterable[str], notify_command: str,
          host: str, tracker_port: int, peer_port: int,
          notifier=None, **options) -> CanaryNode:
    """
    Runs the canary until cancelled

    Args:
        info_hash: 20-byte content hash to watch
        expected_addresses: Addresses that must not fire the canary
        notify_command: Command template; the IP placeholder is substituted
        host: Address advertised to peers
        tracker_port: HTTP tracker port
        peer_port: Peer listener port
        notifier: Replacement for the subprocess notifier
        **options: Other CanaryConfig fields

    Returns:
        The stopped node
    """
    config = CanaryConfig(
        info_hash=info_hash,
        notify_command=notify_command,
        host=host,
        tracker_port=tracker_port,
        peer_port=peer_port,
        expected_addresses=tuple(expected_addresses),
        **options,
    )
    node = CanaryNode(config, notifier=notifier)
    node.start()
    node.serve_forever()
    return node
