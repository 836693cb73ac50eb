"""Bencode encoding and decoding.

Bencode has four types, each identified by its first byte:

- byte string: ``<length>:<bytes>``
- integer: ``i<digits>e``
- list: ``l<value>*e``
- dictionary: ``d(<string><value>)*e``

Decoding threads an explicit offset through :func:`decode_value`, which
returns ``(value, consumed)`` so composite values decode their children
without shared cursor state. Decoded dictionaries keep the key order found
on the wire; :func:`encode` always emits keys sorted bytewise. Integers
are limited to the signed 64-bit range in both directions.
"""

from __future__ import annotations

from typing import Any, Union

from btcore.exceptions import BencodeEncodeError, MalformedEncoding

BencodeValue = Union[bytes, int, list["BencodeValue"], dict[bytes, "BencodeValue"]]

_INT = ord("i")
_LIST = ord("l")
_DICT = ord("d")
_END = ord("e")
_COLON = ord(":")
_DIGITS = frozenset(b"0123456789")

# Integers are signed 64-bit
INT_MIN = -(2**63)
INT_MAX = 2**63 - 1


def decode_value(data: bytes, offset: int = 0) -> tuple[BencodeValue, int]:
    """Decode one value starting at ``offset``.

    Returns:
        The decoded value and the number of bytes it occupied.

    Raises:
        MalformedEncoding: If the input at ``offset`` is not valid bencode
    """
    if offset >= len(data):
        msg = f"Unexpected end of input at offset {offset}"
        raise MalformedEncoding(msg)

    prefix = data[offset]
    if prefix in _DIGITS:
        return _decode_string(data, offset)
    if prefix == _INT:
        return _decode_int(data, offset)
    if prefix == _LIST:
        return _decode_list(data, offset)
    if prefix == _DICT:
        return _decode_dict(data, offset)

    msg = f"Invalid type prefix {chr(prefix)!r} at offset {offset}"
    raise MalformedEncoding(msg)


def _decode_string(data: bytes, offset: int) -> tuple[bytes, int]:
    colon = data.find(b":", offset)
    if colon == -1:
        msg = f"Missing ':' in string length at offset {offset}"
        raise MalformedEncoding(msg)

    length_str = data[offset:colon]
    if not length_str.isdigit():
        msg = f"Invalid string length {length_str!r} at offset {offset}"
        raise MalformedEncoding(msg)
    if len(length_str) > 1 and length_str[0] == ord("0"):
        msg = f"Leading zero in string length at offset {offset}"
        raise MalformedEncoding(msg)

    length = int(length_str)
    start = colon + 1
    end = start + length
    if end > len(data):
        msg = (
            f"String length {length} at offset {offset} exceeds input "
            f"({len(data) - start} bytes available)"
        )
        raise MalformedEncoding(msg)

    return data[start:end], end - offset


def _decode_int(data: bytes, offset: int) -> tuple[int, int]:
    end = data.find(b"e", offset + 1)
    if end == -1:
        msg = f"Unterminated integer at offset {offset}"
        raise MalformedEncoding(msg)

    digits = data[offset + 1 : end]
    body = digits[1:] if digits.startswith(b"-") else digits
    if not body.isdigit():
        msg = f"Invalid integer {digits!r} at offset {offset}"
        raise MalformedEncoding(msg)
    if len(body) > 1 and body[0] == ord("0"):
        msg = f"Leading zero in integer {digits!r} at offset {offset}"
        raise MalformedEncoding(msg)
    if digits == b"-0":
        msg = f"Negative zero at offset {offset}"
        raise MalformedEncoding(msg)

    # 20 or more digits never fit in 64 bits
    value = int(digits) if len(body) <= 19 else None
    if value is None or not INT_MIN <= value <= INT_MAX:
        msg = f"Integer {digits[:32]!r} at offset {offset} is outside the signed 64-bit range"
        raise MalformedEncoding(msg)

    return value, end + 1 - offset


def _decode_list(data: bytes, offset: int) -> tuple[list[BencodeValue], int]:
    items: list[BencodeValue] = []
    pos = offset + 1
    while pos < len(data) and data[pos] != _END:
        value, consumed = decode_value(data, pos)
        items.append(value)
        pos += consumed

    if pos >= len(data):
        msg = f"Unterminated list at offset {offset}"
        raise MalformedEncoding(msg)
    return items, pos + 1 - offset


def _decode_dict(data: bytes, offset: int) -> tuple[dict[bytes, BencodeValue], int]:
    result: dict[bytes, BencodeValue] = {}
    pos = offset + 1
    while pos < len(data) and data[pos] != _END:
        if data[pos] not in _DIGITS:
            msg = f"Dictionary key at offset {pos} is not a byte string"
            raise MalformedEncoding(msg)
        key, consumed = _decode_string(data, pos)
        pos += consumed
        value, consumed = decode_value(data, pos)
        pos += consumed
        result[key] = value

    if pos >= len(data):
        msg = f"Unterminated dictionary at offset {offset}"
        raise MalformedEncoding(msg)
    return result, pos + 1 - offset


def decode(data: bytes | str) -> BencodeValue:
    """Decode a complete bencoded message.

    Raises:
        MalformedEncoding: On syntax errors or trailing bytes after the value
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    value, consumed = decode_value(data, 0)
    if consumed != len(data):
        msg = f"Trailing data after offset {consumed} ({len(data) - consumed} bytes)"
        raise MalformedEncoding(msg)
    return value


def encode(value: Any) -> bytes:
    """Encode a value in canonical bencode.

    ``str`` is accepted wherever ``bytes`` is and is encoded as UTF-8.

    Raises:
        BencodeEncodeError: If the value contains an unsupported type or an
            integer outside the signed 64-bit range
    """
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def _encode_into(value: Any, out: bytearray) -> None:
    # bool is an int subclass and has no bencode form
    if isinstance(value, bool):
        msg = "Cannot bencode bool"
        raise BencodeEncodeError(msg)
    if isinstance(value, int):
        if not INT_MIN <= value <= INT_MAX:
            msg = f"Integer {value} is outside the signed 64-bit range"
            raise BencodeEncodeError(msg)
        out += b"i%de" % value
    elif isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        out += b"%d:" % len(raw)
        out += raw
    elif isinstance(value, str):
        _encode_into(value.encode("utf-8"), out)
    elif isinstance(value, (list, tuple)):
        out += b"l"
        for item in value:
            _encode_into(item, out)
        out += b"e"
    elif isinstance(value, dict):
        items = []
        for key, item in value.items():
            if isinstance(key, str):
                key = key.encode("utf-8")
            elif not isinstance(key, bytes):
                msg = f"Dictionary keys must be bytes or str, got {type(key).__name__}"
                raise BencodeEncodeError(msg)
            items.append((key, item))
        items.sort(key=lambda kv: kv[0])
        out += b"d"
        for i, (key, item) in enumerate(items):
            if i and key == items[i - 1][0]:
                msg = f"Duplicate dictionary key {key!r}"
                raise BencodeEncodeError(msg)
            _encode_into(key, out)
            _encode_into(item, out)
        out += b"e"
    else:
        msg = f"Cannot bencode type {type(value).__name__}"
        raise BencodeEncodeError(msg)


class BencodeDecoder:
    """Decoder bound to a single input buffer."""

    def __init__(self, data: bytes):
        """Initialize decoder with the bytes to decode."""
        self.data = data

    def decode(self) -> BencodeValue:
        """Decode the whole buffer as one value."""
        return decode(self.data)


class BencodeEncoder:
    """Canonical bencode encoder."""

    def encode(self, value: Any) -> bytes:
        """Encode a value."""
        return encode(value)


def to_json_compatible(value: BencodeValue) -> Any:
    """Convert a decoded value into something ``json.dumps`` accepts.

    Byte strings become text when they are valid UTF-8 and hex otherwise.
    """
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value.hex()
    if isinstance(value, list):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, dict):
        return {
            key.decode("utf-8", errors="replace"): to_json_compatible(item)
            for key, item in value.items()
        }
    return value
