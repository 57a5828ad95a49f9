# swarmcanary/common/bencode.py
"""
Bencode codec used by the tracker responses and the content descriptor

Encoding is canonical: dictionary keys are written in ascending byte order,
so the same logical structure always produces the same bytes. Decoding is
strict and rejects anything a canonical encoder would not have produced.
"""
from typing import Any, Dict, List, Tuple

from .errors import MalformedEncoding, UnexpectedType

MAX_DEPTH = 64

_DIGITS = b"0123456789"


def encode(value: Any) -> bytes:
    """
    Encodes a value to bencode

    Args:
        value: int, bytes, str, list/tuple or dict (bytes or str keys)

    Returns:
        Canonical bencoded bytes
    """
    out: List[bytes] = []
    _encode_into(value, out)
    return b"".join(out)


def _encode_into(value: Any, out: List[bytes]):
    # bool is an int subclass but has no bencode form
    if isinstance(value, bool):
        raise UnexpectedType("bool cannot be bencoded")

    if isinstance(value, int):
        out.append(b"i%de" % value)
    elif isinstance(value, (bytes, bytearray, memoryview)):
        data = bytes(value)
        out.append(b"%d:" % len(data))
        out.append(data)
    elif isinstance(value, str):
        _encode_into(value.encode("utf-8"), out)
    elif isinstance(value, (list, tuple)):
        out.append(b"l")
        for item in value:
            _encode_into(item, out)
        out.append(b"e")
    elif isinstance(value, dict):
        items: Dict[bytes, Any] = {}
        for key, item in value.items():
            raw_key = _key_bytes(key)
            if raw_key in items:
                raise MalformedEncoding(f"duplicate dictionary key {raw_key!r}")
            items[raw_key] = item

        out.append(b"d")
        for raw_key in sorted(items):
            _encode_into(raw_key, out)
            _encode_into(items[raw_key], out)
        out.append(b"e")
    else:
        raise UnexpectedType(f"unsupported bencode type: {type(value).__name__}")


def _key_bytes(key: Any) -> bytes:
    if isinstance(key, str):
        return key.encode("utf-8")
    if isinstance(key, (bytes, bytearray)):
        return bytes(key)
    raise UnexpectedType(f"dictionary keys must be byte strings, got {type(key).__name__}")


class _Decoder:
    """Index based parser over a single buffer"""

    def __init__(self, data: bytes, max_depth: int = MAX_DEPTH):
        self.data = data
        self.max_depth = max_depth

    def parse(self, pos: int, depth: int = 0) -> Tuple[Any, int]:
        if depth > self.max_depth:
            raise MalformedEncoding("nesting too deep", pos)
        if pos >= len(self.data):
            raise MalformedEncoding("unexpected end of data", pos)

        marker = self.data[pos:pos + 1]
        if marker == b"i":
            return self._parse_int(pos)
        if marker in _DIGITS:
            return self._parse_bytes(pos)
        if marker == b"l":
            return self._parse_list(pos, depth)
        if marker == b"d":
            return self._parse_dict(pos, depth)
        raise MalformedEncoding(f"unexpected type marker {marker!r}", pos)

    def _parse_int(self, pos: int) -> Tuple[int, int]:
        end = self.data.find(b"e", pos + 1)
        if end < 0:
            raise MalformedEncoding("unterminated integer", pos)

        digits = self.data[pos + 1:end]
        body = digits[1:] if digits.startswith(b"-") else digits
        if not body or not all(c in _DIGITS for c in body):
            raise MalformedEncoding(f"invalid integer {digits!r}", pos)
        if body.startswith(b"0") and (len(body) > 1 or digits.startswith(b"-")):
            raise MalformedEncoding(f"non-canonical integer {digits!r}", pos)

        try:
            return int(digits), end + 1
        except ValueError as e:
            # interpreter limit on integer string length
            raise MalformedEncoding(f"integer too large: {e}", pos) from e

    def _parse_bytes(self, pos: int) -> Tuple[bytes, int]:
        colon = self.data.find(b":", pos)
        if colon < 0:
            raise MalformedEncoding("unterminated length prefix", pos)

        prefix = self.data[pos:colon]
        if not all(c in _DIGITS for c in prefix):
            raise MalformedEncoding(f"invalid length prefix {prefix!r}", pos)
        if prefix.startswith(b"0") and len(prefix) > 1:
            raise MalformedEncoding(f"non-canonical length prefix {prefix!r}", pos)

        start = colon + 1
        length = int(prefix)
        if length > len(self.data) - start:
            raise MalformedEncoding(f"length {length} runs past end of data", pos)
        return self.data[start:start + length], start + length

    def _parse_list(self, pos: int, depth: int) -> Tuple[list, int]:
        items = []
        pos += 1
        while True:
            if pos >= len(self.data):
                raise MalformedEncoding("unterminated list", pos)
            if self.data[pos:pos + 1] == b"e":
                return items, pos + 1
            item, pos = self.parse(pos, depth + 1)
            items.append(item)

    def _parse_dict(self, pos: int, depth: int) -> Tuple[dict, int]:
        result: Dict[bytes, Any] = {}
        last_key = None
        pos += 1
        while True:
            if pos >= len(self.data):
                raise MalformedEncoding("unterminated dictionary", pos)
            if self.data[pos:pos + 1] == b"e":
                return result, pos + 1

            if self.data[pos:pos + 1] not in _DIGITS:
                raise MalformedEncoding("dictionary key is not a byte string", pos)
            key_pos = pos
            key, pos = self._parse_bytes(pos)
            if last_key is not None and key <= last_key:
                reason = "duplicate" if key == last_key else "unsorted"
                raise MalformedEncoding(f"{reason} dictionary key {key!r}", key_pos)
            if pos >= len(self.data) or self.data[pos:pos + 1] == b"e":
                raise MalformedEncoding(f"missing value for key {key!r}", pos)

            result[key], pos = self.parse(pos, depth + 1)
            last_key = key


def decode(data: bytes) -> Tuple[Any, int]:
    """
    Decodes the first bencoded value in a buffer

    Args:
        data: Bencoded bytes

    Returns:
        Tuple (value, bytes consumed). Byte strings come back as bytes and
        dictionaries are keyed by bytes.

    Raises:
        MalformedEncoding: if the data is not valid canonical bencode
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise UnexpectedType(f"can only decode bytes, got {type(data).__name__}")
    return _Decoder(bytes(data)).parse(0)


def decode_all(data: bytes) -> Any:
    """Decodes a buffer that must hold exactly one bencoded value"""
    value, consumed = decode(data)
    if consumed != len(data):
        raise MalformedEncoding("trailing data after value", consumed)
    return value


def expect_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise UnexpectedType(f"expected integer, got {type(value).__name__}")
    return value


def expect_bytes(value: Any) -> bytes:
    if not isinstance(value, bytes):
        raise UnexpectedType(f"expected byte string, got {type(value).__name__}")
    return value


def expect_list(value: Any) -> list:
    if not isinstance(value, list):
        raise UnexpectedType(f"expected list, got {type(value).__name__}")
    return value


def expect_dict(value: Any) -> dict:
    if not isinstance(value, dict):
        raise UnexpectedType(f"expected dictionary, got {type(value).__name__}")
    return value
