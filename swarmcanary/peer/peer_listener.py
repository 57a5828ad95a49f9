# swarmcanary/peer/peer_listener.py
"""
TCP listener that identifies swarm members by their handshake
"""
import logging
import socket
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..common.config import (BIND_HOST, HANDSHAKE_TIMEOUT, MAX_CONNECTIONS, PEER_PORT,
                             SHUTDOWN_GRACE)
from ..common.errors import HandshakeError, HandshakeMismatch, HandshakeTimeout
from ..common.messages import CanaryEvent, EventSource
from ..canary.evaluator import normalize_address
from ..tracker.swarm_registry import SwarmRegistry
from .handshake import (HASH_LENGTH, PEER_ID_LENGTH, PROTOCOL_NAME, RESERVED, Handshake,
                        generate_peer_id, parse_header)

logger = logging.getLogger(__name__)

ACCEPT_POLL = 0.5


class PeerListener:
    """Accepts peer connections and reports those that handshake for our hash"""

    def __init__(self, info_hash: bytes, on_event: Callable[[CanaryEvent], object],
                 host: str = BIND_HOST, port: int = PEER_PORT,
                 peer_id: Optional[bytes] = None,
                 registry: Optional[SwarmRegistry] = None,
                 handshake_timeout: float = HANDSHAKE_TIMEOUT):
        self.info_hash = info_hash
        self.on_event = on_event
        self.host = host
        self.port = port
        self.peer_id = peer_id or generate_peer_id()
        self.registry = registry
        self.handshake_timeout = handshake_timeout

        self.server_socket: Optional[socket.socket] = None
        self.server_thread: Optional[threading.Thread] = None
        self.is_running = False
        self.connections: Dict[threading.Thread, socket.socket] = {}
        self._connections_lock = threading.Lock()

    def start(self):
        """
        Binds the peer port and starts accepting connections

        Raises:
            OSError: if the port cannot be bound
        """
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        self.server_socket = socket.socket(family, socket.SOCK_STREAM)
        try:
            self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.server_socket.bind((self.host, self.port))
            self.server_socket.listen(MAX_CONNECTIONS)
            self.server_socket.settimeout(ACCEPT_POLL)
        except OSError:
            self.server_socket.close()
            self.server_socket = None
            raise

        # port 0 picks a free port
        self.port = self.server_socket.getsockname()[1]
        self.is_running = True

        self.server_thread = threading.Thread(target=self._server_loop, name="peer-listener",
                                              daemon=True)
        self.server_thread.start()
        logger.info(f"Peer listener started on {self.host}:{self.port}")

    def stop(self, grace: float = SHUTDOWN_GRACE):
        """Closes the listening socket, then in-flight handshakes after the grace period"""
        self.is_running = False

        if self.server_socket:
            try:
                self.server_socket.close()
            except OSError:
                pass
        if self.server_thread:
            self.server_thread.join(ACCEPT_POLL * 2)

        deadline = time.monotonic() + grace
        with self._connections_lock:
            pending = list(self.connections)
        for thread in pending:
            if thread.ident is None:
                continue
            thread.join(max(0.0, deadline - time.monotonic()))

        with self._connections_lock:
            leftover = list(self.connections.values())
            self.connections.clear()
        for client_socket in leftover:
            try:
                client_socket.close()
            except OSError:
                pass

        logger.info("Peer listener stopped")

    def _server_loop(self):
        """Main accept loop"""
        while self.is_running:
            try:
                client_socket, address = self.server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.is_running:
                    logger.error(f"Error accepting peer connection: {e}")
                break

            thread = threading.Thread(
                target=self._handle_incoming_connection,
                args=(client_socket, address),
                daemon=True,
            )
            with self._connections_lock:
                thread.start()
                self.connections[thread] = client_socket

    def _handle_incoming_connection(self, client_socket: socket.socket, address: Tuple):
        """Runs the handshake of one connection, isolating its failures"""
        try:
            with client_socket:
                self.handle_connection(client_socket, address)
        except HandshakeTimeout as e:
            logger.info(f"Handshake timed out for {address[0]}: {e}")
        except HandshakeMismatch as e:
            logger.debug(f"Dropped {address[0]}: {e}")
        except (HandshakeError, OSError) as e:
            logger.debug(f"Connection from {address[0]} failed: {e}")
        except Exception:
            logger.exception(f"Unexpected error handling peer {address[0]}")
        finally:
            with self._connections_lock:
                self.connections.pop(threading.current_thread(), None)

    def handle_connection(self, client_socket: socket.socket, address: Tuple) -> Handshake:
        """
        Reads and checks a handshake, reports the peer and answers

        Args:
            client_socket: Connected socket
            address: Remote address as returned by accept()

        Returns:
            The handshake the peer sent

        Raises:
            HandshakeMismatch: wrong protocol or content hash
            HandshakeTimeout: handshake not received within the window
        """
        deadline = time.monotonic() + self.handshake_timeout

        header = self._recv_exact(client_socket, 1 + len(PROTOCOL_NAME) + len(RESERVED), deadline)
        reserved = parse_header(header)

        info_hash = self._recv_exact(client_socket, HASH_LENGTH, deadline)
        if info_hash != self.info_hash:
            raise HandshakeMismatch(f"unwanted info hash {info_hash.hex()}")

        peer_id = self._recv_exact(client_socket, PEER_ID_LENGTH, deadline)
        remote = Handshake(info_hash=info_hash, peer_id=peer_id, reserved=reserved)

        ip, port = normalize_address(address[0]), address[1]
        logger.info(f"Peer handshake from {ip}:{port}")
        self.on_event(CanaryEvent(observed_address=ip, source=EventSource.PEER,
                                  info_hash=info_hash))

        if self.registry is not None:
            # the source port is ephemeral; only peers that announced are refreshed
            previous = self.registry.refresh(info_hash, peer_id, ip)
            if previous is not None and previous.address != ip:
                logger.warning(f"Peer {peer_id!r} moved from {previous.address} to {ip}")

        reply = Handshake(info_hash=info_hash, peer_id=self.peer_id)
        client_socket.settimeout(max(0.1, deadline - time.monotonic()))
        try:
            client_socket.sendall(reply.to_bytes())
        except OSError as e:
            logger.debug(f"Could not answer handshake of {ip}: {e}")
        return remote

    @staticmethod
    def _recv_exact(client_socket: socket.socket, size: int, deadline: float) -> bytes:
        """Receives exactly 'size' bytes before the deadline"""
        data = b""
        while len(data) < size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HandshakeTimeout(f"got {len(data)} of {size} bytes")
            client_socket.settimeout(remaining)
            try:
                chunk = client_socket.recv(size - len(data))
            except socket.timeout:
                raise HandshakeTimeout(f"got {len(data)} of {size} bytes") from None
            if not chunk:
                raise HandshakeError("peer closed the connection during handshake")
            data += chunk
        return data
