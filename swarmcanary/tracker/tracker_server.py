# swarmcanary/tracker/tracker_server.py
"""
HTTP announce tracker for the canary swarm
Answers announces with a bencoded peer list and reports every announcer
"""
import ipaddress
import logging
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote_to_bytes

from flask import Flask, Response, request
from werkzeug.exceptions import HTTPException
from werkzeug.serving import WSGIRequestHandler, make_server

from ..common import bencode
from ..common.config import (ANNOUNCE_INTERVAL, ANNOUNCE_PATH, BIND_HOST, DEFAULT_HOST,
                             MAX_CONNECTIONS, PEER_PORT, REQUEST_TIMEOUT,
                             TRACKER_MAX_PEERS_RETURNED, TRACKER_PORT)
from ..common.errors import BadRequest
from ..common.messages import CanaryEvent, EventSource
from ..canary.evaluator import normalize_address
from .swarm_registry import PeerRecord, SwarmRegistry

logger = logging.getLogger(__name__)

HASH_LENGTH = 20
EVENTS = ("started", "stopped", "completed", "")


def parse_query(query: bytes) -> Dict[str, bytes]:
    """
    Percent-decodes a raw query string without decoding values as text

    Args:
        query: Raw query string (the part after '?')

    Returns:
        Dict of parameter name -> raw value; the first occurrence wins
    """
    params: Dict[str, bytes] = {}
    for part in query.split(b"&"):
        if not part:
            continue
        key, _, value = part.partition(b"=")
        name = unquote_to_bytes(key.replace(b"+", b" ")).decode("latin-1")
        if name not in params:
            params[name] = unquote_to_bytes(value.replace(b"+", b" "))
    return params


def _int_param(params: Dict[str, bytes], name: str, default: Optional[int] = None) -> Optional[int]:
    raw = params.get(name)
    if raw is None or raw == b"":
        if default is None:
            raise BadRequest(f"missing {name}")
        return default
    if not raw.isdigit():
        raise BadRequest(f"invalid {name}")
    return int(raw)


def _flag_param(params: Dict[str, bytes], name: str) -> bool:
    return params.get(name, b"0") not in (b"0", b"")


@dataclass(frozen=True)
class AnnounceRequest:
    info_hash: bytes
    peer_id: bytes
    port: int
    uploaded: int = 0
    downloaded: int = 0
    left: int = 0
    event: str = ""
    compact: bool = False
    no_peer_id: bool = False
    numwant: Optional[int] = None

    @classmethod
    def from_params(cls, params: Dict[str, bytes]) -> "AnnounceRequest":
        """
        Validates announce parameters

        Raises:
            BadRequest: on a missing or malformed required parameter
        """
        info_hash = params.get("info_hash")
        if info_hash is None:
            raise BadRequest("missing info_hash")
        if len(info_hash) != HASH_LENGTH:
            raise BadRequest(f"info_hash must be {HASH_LENGTH} bytes, got {len(info_hash)}")

        peer_id = params.get("peer_id")
        if not peer_id:
            raise BadRequest("missing peer_id")

        port = _int_param(params, "port")
        if not 0 < port < 65536:
            raise BadRequest(f"port out of range: {port}")

        event = params.get("event", b"").decode("latin-1")
        if event not in EVENTS:
            event = ""

        numwant = params.get("numwant")
        return cls(
            info_hash=info_hash,
            peer_id=peer_id,
            port=port,
            uploaded=_int_param(params, "uploaded", 0),
            downloaded=_int_param(params, "downloaded", 0),
            left=_int_param(params, "left", 0),
            event=event,
            compact=_flag_param(params, "compact"),
            no_peer_id=_flag_param(params, "no_peer_id"),
            numwant=_int_param(params, "numwant") if numwant else None,
        )


def failure(reason: str) -> bytes:
    return bencode.encode({b"failure reason": reason})


def encode_peers_compact(peers: List[Tuple[bytes, str, int]]) -> bytes:
    """6 bytes per IPv4 peer; other address families are left out"""
    entries = []
    for _, ip, port in peers:
        try:
            packed = ipaddress.IPv4Address(ip).packed
        except ValueError:
            continue
        entries.append(packed + struct.pack("!H", port))
    return b"".join(entries)


def encode_peers_detailed(peers: List[Tuple[bytes, str, int]], no_peer_id: bool = False) -> list:
    result = []
    for peer_id, ip, port in peers:
        entry = {b"ip": ip, b"port": port}
        if not no_peer_id:
            entry[b"peer id"] = peer_id
        result.append(entry)
    return result


class TrackerServer:
    """Announce endpoint for the tracked content hash"""

    def __init__(self, info_hash: bytes, registry: SwarmRegistry,
                 on_event: Callable[[CanaryEvent], object],
                 peer_id: bytes,
                 host: str = DEFAULT_HOST,
                 peer_port: int = PEER_PORT,
                 bind_host: str = BIND_HOST,
                 port: int = TRACKER_PORT,
                 interval: int = ANNOUNCE_INTERVAL,
                 max_peers: int = TRACKER_MAX_PEERS_RETURNED,
                 request_timeout: float = REQUEST_TIMEOUT):
        self.info_hash = info_hash
        self.registry = registry
        self.on_event = on_event
        self.peer_id = peer_id
        self.host = host
        self.peer_port = peer_port
        self.bind_host = bind_host
        self.port = port
        self.interval = interval
        self.max_peers = max_peers
        self.request_timeout = request_timeout

        self.app = self._create_app()
        self.server = None
        self.server_thread: Optional[threading.Thread] = None

    def _create_app(self) -> Flask:
        app = Flask(__name__)

        @app.route(ANNOUNCE_PATH, methods=["GET"])
        def announce():
            status, body = self.handle_announce(request.query_string, request.remote_addr)
            return Response(body, status=status, content_type="text/plain")

        @app.errorhandler(HTTPException)
        def http_error(error):
            return Response(failure(error.name), status=error.code, content_type="text/plain")

        @app.errorhandler(Exception)
        def internal_error(error):
            logger.exception(f"Error handling {request.path}")
            return Response(failure("Internal server error."), status=500,
                            content_type="text/plain")

        return app

    def handle_announce(self, query: bytes, remote_addr: Optional[str]) -> Tuple[int, bytes]:
        """
        Processes one announce

        Args:
            query: Raw query string
            remote_addr: Transport-level address of the caller

        Returns:
            Tuple (HTTP status, bencoded body)
        """
        try:
            announce = AnnounceRequest.from_params(parse_query(query))
        except BadRequest as e:
            logger.info(f"Bad announce from {remote_addr}: {e}")
            return e.status, failure(str(e))

        if announce.info_hash != self.info_hash:
            logger.debug(f"Announce for unknown hash {announce.info_hash.hex()} from {remote_addr}")
            return 404, failure("Invalid info hash.")

        address = normalize_address(remote_addr or "")
        logger.info(f"Announce from {address}:{announce.port} event={announce.event or 'none'}")
        self.on_event(CanaryEvent(observed_address=address, source=EventSource.TRACKER,
                                  info_hash=announce.info_hash))

        if announce.event == "stopped":
            self.registry.remove(announce.info_hash, announce.peer_id)
        else:
            previous = self.registry.register(announce.info_hash, PeerRecord(
                peer_id=announce.peer_id,
                address=address,
                port=announce.port,
                last_seen=self.registry.clock(),
                left=announce.left,
            ))
            if previous is not None and previous.address != address:
                logger.warning(f"Peer {announce.peer_id!r} moved from {previous.address} to {address}")

        return 200, bencode.encode(self._build_response(announce, address))

    def _build_response(self, announce: AnnounceRequest, address: str) -> dict:
        limit = self.max_peers if announce.numwant is None else min(announce.numwant, self.max_peers)

        peers: List[Tuple[bytes, str, int]] = []
        if limit > 0:
            others = self.registry.list(announce.info_hash, exclude_peer_id=announce.peer_id,
                                        max_count=limit - 1)
            peers = [(r.peer_id, r.address, r.port) for r in others]
            # our own listener comes last so clients go on to handshake with it
            peers.append((self.peer_id, self.host, self.peer_port))

        complete, incomplete = self.registry.counts(announce.info_hash)
        return {
            b"interval": self.interval,
            b"min interval": self.interval // 2,
            b"complete": complete,
            b"incomplete": incomplete,
            b"peers": (encode_peers_compact(peers) if announce.compact and self._host_is_ipv4()
                       else encode_peers_detailed(peers, announce.no_peer_id)),
            b"warning message": f"Your IP is {address}",
        }

    def _host_is_ipv4(self) -> bool:
        # the compact form cannot carry our own entry for a hostname or IPv6 host
        try:
            ipaddress.IPv4Address(self.host)
        except ValueError:
            return False
        return True

    def start(self):
        """
        Binds the tracker port and serves in a background thread

        Raises:
            OSError: if the port cannot be bound
        """
        family = socket.AF_INET6 if ":" in self.bind_host else socket.AF_INET
        listen_socket = socket.socket(family, socket.SOCK_STREAM)
        try:
            listen_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listen_socket.bind((self.bind_host, self.port))
            listen_socket.listen(MAX_CONNECTIONS)
            self.port = listen_socket.getsockname()[1]

            handler = type("TrackerRequestHandler", (WSGIRequestHandler,),
                           {"timeout": self.request_timeout})
            self.server = make_server(self.bind_host, self.port, self.app, threaded=True,
                                      request_handler=handler, fd=listen_socket.fileno())
        finally:
            # the server works on its own duplicate of the descriptor
            listen_socket.close()

        self.server_thread = threading.Thread(target=self.server.serve_forever,
                                              name="tracker-server", daemon=True)
        self.server_thread.start()
        logger.info(f"Tracker started on {self.bind_host}:{self.port}{ANNOUNCE_PATH}")

    def stop(self):
        """Stops accepting announces and closes the listening socket"""
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
        if self.server_thread is not None:
            self.server_thread.join(self.request_timeout)
            self.server_thread = None
        logger.info("Tracker stopped")
