# swarmcanary/common/file_utils.py
"""
Content descriptor and content hash helpers
"""
import hashlib
import logging
import os
import string
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from . import bencode
from .config import DESCRIPTOR_FILE, PIECE_LENGTH
from .errors import InvalidHash

logger = logging.getLogger(__name__)

HASH_LENGTH = 20
_HEX_DIGITS = set(string.hexdigits)


@dataclass(frozen=True)
class ContentDescriptor:
    """Minimal single-file descriptor (the "info" dictionary of a torrent)"""
    name: str
    piece_length: int
    pieces: Tuple[bytes, ...]
    length: int
    private: bool = False

    def to_dict(self) -> Dict[bytes, Union[int, bytes]]:
        info = {
            b"length": self.length,
            b"name": self.name.encode("utf-8"),
            b"piece length": self.piece_length,
            b"pieces": b"".join(self.pieces),
        }
        if self.private:
            info[b"private"] = 1
        return info

    def encode(self) -> bytes:
        return bencode.encode(self.to_dict())


class FileUtils:
    """File reading and hashing helpers"""

    @staticmethod
    def split_file_to_pieces(file_path: str, piece_length: int = PIECE_LENGTH):
        """
        Reads a file in fixed-size pieces

        Args:
            file_path: Path to the file
            piece_length: Size of each piece in bytes

        Yields:
            Pieces (bytes); the last one may be shorter
        """
        with open(file_path, "rb") as file:
            for piece in iter(lambda: file.read(piece_length), b""):
                yield piece

    @staticmethod
    def calculate_piece_hash(piece: bytes) -> bytes:
        return hashlib.sha1(piece).digest()


def build_descriptor(file_path: str, piece_length: int = PIECE_LENGTH,
                     name: Optional[str] = None, private: bool = False) -> ContentDescriptor:
    """
    Builds the descriptor of a single file

    Args:
        file_path: File to describe
        piece_length: Piece size in bytes
        name: Name stored in the descriptor (defaults to the file's base name)
        private: Sets the "private" flag

    Returns:
        Immutable ContentDescriptor
    """
    if piece_length <= 0:
        raise ValueError(f"piece length must be positive: {piece_length}")

    pieces = []
    length = 0
    for piece in FileUtils.split_file_to_pieces(file_path, piece_length):
        pieces.append(FileUtils.calculate_piece_hash(piece))
        length += len(piece)

    descriptor = ContentDescriptor(
        name=name if name is not None else os.path.basename(file_path),
        piece_length=piece_length,
        pieces=tuple(pieces),
        length=length,
        private=private,
    )
    logger.debug(f"Descriptor for {file_path}: {length} bytes in {len(pieces)} pieces")
    return descriptor


def hash_of(descriptor: ContentDescriptor) -> bytes:
    """SHA-1 of the canonical bencoding of the descriptor"""
    return hashlib.sha1(descriptor.encode()).digest()


def parse_hash(literal: Union[str, bytes]) -> bytes:
    """
    Validates an externally supplied content hash

    Args:
        literal: 40 hex characters (str or ASCII bytes) or 20 raw bytes

    Returns:
        The 20-byte hash

    Raises:
        InvalidHash: on any other length or character set
    """
    if isinstance(literal, (bytes, bytearray)):
        literal = bytes(literal)
        if len(literal) == HASH_LENGTH:
            return literal
        try:
            literal = literal.decode("ascii")
        except UnicodeDecodeError:
            raise InvalidHash(f"hash must be {HASH_LENGTH} raw bytes or 40 hex characters") from None

    if not isinstance(literal, str):
        raise InvalidHash(f"unsupported hash type: {type(literal).__name__}")

    text = literal.strip()
    if len(text) != HASH_LENGTH * 2:
        raise InvalidHash(f"hash must be {HASH_LENGTH * 2} hex characters, got {len(text)}")
    if not set(text) <= _HEX_DIGITS:
        raise InvalidHash(f"hash contains non-hex characters: {text!r}")
    return bytes.fromhex(text)


def write_descriptor_file(descriptor: ContentDescriptor, announce_url: str,
                          path: str = DESCRIPTOR_FILE) -> bool:
    """
    Writes a bencoded {announce, info} descriptor file

    Returns:
        True if written, False if the write failed (the error is logged)
    """
    data = bencode.encode({b"announce": announce_url, b"info": descriptor.to_dict()})
    try:
        with open(path, "wb") as file:
            file.write(data)
    except OSError as e:
        logger.error(f"Could not write descriptor file {path}: {e}")
        return False

    logger.info(f"Descriptor file written to {path}")
    return True


def hash_file(file_path: str, piece_length: int = PIECE_LENGTH,
              announce_url: Optional[str] = None,
              descriptor_path: Optional[str] = DESCRIPTOR_FILE) -> bytes:
    """
    Builds the descriptor of a file and returns its content hash

    The descriptor file is only written when both announce_url and
    descriptor_path are given; a failed write does not stop the hashing.
    """
    descriptor = build_descriptor(file_path, piece_length)
    info_hash = hash_of(descriptor)

    if announce_url and descriptor_path:
        write_descriptor_file(descriptor, announce_url, descriptor_path)

    logger.info(f"Info hash of {file_path}: {info_hash.hex()}")
    return info_hash
