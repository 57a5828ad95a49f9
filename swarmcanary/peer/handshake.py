# swarmcanary/peer/handshake.py
"""
BitTorrent peer-wire handshake message
"""
import random
from dataclasses import dataclass

from ..common.config import PEER_ID_PREFIX
from ..common.errors import HandshakeMismatch

PROTOCOL_NAME = b"BitTorrent protocol"
RESERVED = b"\x00" * 8
HASH_LENGTH = 20
PEER_ID_LENGTH = 20
HANDSHAKE_LENGTH = 1 + len(PROTOCOL_NAME) + len(RESERVED) + HASH_LENGTH + PEER_ID_LENGTH


@dataclass(frozen=True)
class Handshake:
    info_hash: bytes
    peer_id: bytes
    reserved: bytes = RESERVED
    protocol: bytes = PROTOCOL_NAME

    def to_bytes(self) -> bytes:
        return (bytes([len(self.protocol)]) + self.protocol + self.reserved
                + self.info_hash + self.peer_id)


def parse_header(data: bytes) -> bytes:
    """
    Checks the protocol part of a handshake (length byte, name, reserved)

    Returns:
        The reserved bytes
    """
    if len(data) < 1 + len(PROTOCOL_NAME) + len(RESERVED):
        raise HandshakeMismatch("short handshake header")
    if data[0] != len(PROTOCOL_NAME) or data[1:1 + len(PROTOCOL_NAME)] != PROTOCOL_NAME:
        raise HandshakeMismatch(f"unknown protocol {data[1:1 + data[0]]!r}")
    start = 1 + len(PROTOCOL_NAME)
    return data[start:start + len(RESERVED)]


def parse_handshake(data: bytes) -> Handshake:
    """Parses a complete 68-byte handshake"""
    if len(data) != HANDSHAKE_LENGTH:
        raise HandshakeMismatch(f"handshake must be {HANDSHAKE_LENGTH} bytes, got {len(data)}")

    reserved = parse_header(data)
    offset = 1 + len(PROTOCOL_NAME) + len(RESERVED)
    return Handshake(
        info_hash=data[offset:offset + HASH_LENGTH],
        peer_id=data[offset + HASH_LENGTH:],
        reserved=reserved,
    )


def generate_peer_id(prefix: bytes = PEER_ID_PREFIX) -> bytes:
    """Azureus-style peer id: client prefix followed by random digits"""
    digits = "".join(random.choice("0123456789") for _ in range(PEER_ID_LENGTH - len(prefix)))
    return prefix + digits.encode("ascii")
