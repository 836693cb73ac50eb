"""Peer wire protocol messages.

Handshake encoding plus one class per length-prefixed message. A frame on
the wire is ``<4-byte big-endian length><1-byte id><payload>``; a length of
zero is a keep-alive with neither id nor payload.
"""

from __future__ import annotations

import struct
from typing import ClassVar

from btcore.exceptions import HandshakeFailed, MessageError
from btcore.models import HASH_LENGTH, MessageType

HANDSHAKE_LENGTH = 68
LENGTH_PREFIX = struct.Struct("!I")
_HEADER = struct.Struct("!IB")
_INDEX = struct.Struct("!I")
_BLOCK_REF = struct.Struct("!III")
_PIECE_HEADER = struct.Struct("!II")


class Handshake:
    """BitTorrent handshake message."""

    PROTOCOL_STRING: bytes = b"BitTorrent protocol"
    RESERVED_BYTES: bytes = b"\x00" * 8  # no extensions

    def __init__(self, info_hash: bytes, peer_id: bytes, reserved: bytes = RESERVED_BYTES) -> None:
        """Initialize handshake.

        Args:
            info_hash: 20-byte SHA-1 hash of info dictionary
            peer_id: 20-byte peer ID
            reserved: 8 reserved bytes (all zero when we send)
        """
        if len(info_hash) != HASH_LENGTH:
            msg = f"Info hash must be 20 bytes, got {len(info_hash)}"
            raise HandshakeFailed(msg)
        if len(peer_id) != 20:
            msg = f"Peer ID must be 20 bytes, got {len(peer_id)}"
            raise HandshakeFailed(msg)
        if len(reserved) != 8:
            msg = f"Reserved must be 8 bytes, got {len(reserved)}"
            raise HandshakeFailed(msg)

        self.info_hash = info_hash
        self.peer_id = peer_id
        self.reserved = reserved

    def encode(self) -> bytes:
        """Encode handshake to bytes.

        Format: <protocol len><protocol><reserved><info_hash><peer_id>
        Total: 1 + 19 + 8 + 20 + 20 = 68 bytes
        """
        return (
            struct.pack("B", len(self.PROTOCOL_STRING))
            + self.PROTOCOL_STRING
            + self.reserved
            + self.info_hash
            + self.peer_id
        )

    @classmethod
    def decode(cls, data: bytes) -> Handshake:
        """Decode handshake from bytes.

        Reserved bits are kept but not interpreted.

        Raises:
            HandshakeFailed: If the length or protocol identifier is wrong
        """
        if len(data) != HANDSHAKE_LENGTH:
            msg = f"Handshake must be 68 bytes, got {len(data)}"
            raise HandshakeFailed(msg)

        protocol_len = data[0]
        if protocol_len != len(cls.PROTOCOL_STRING):
            msg = f"Invalid protocol length: {protocol_len}"
            raise HandshakeFailed(msg)

        protocol_string = data[1:20]
        if protocol_string != cls.PROTOCOL_STRING:
            msg = f"Invalid protocol string: {protocol_string!r}"
            raise HandshakeFailed(msg)

        return cls(info_hash=data[28:48], peer_id=data[48:68], reserved=data[20:28])


class PeerMessage:
    """Base class for framed peer messages."""

    message_type: ClassVar[MessageType]

    def payload(self) -> bytes:
        """Return the bytes following the message id."""
        return b""

    def encode(self) -> bytes:
        """Encode the full frame, length prefix included."""
        payload = self.payload()
        return _HEADER.pack(1 + len(payload), self.message_type) + payload

    @classmethod
    def from_payload(cls, payload: bytes) -> PeerMessage:
        """Build the message from the bytes following the id."""
        if payload:
            msg = f"{cls.__name__} takes no payload, got {len(payload)} bytes"
            raise MessageError(msg)
        return cls()

    def __eq__(self, other) -> bool:
        """Messages are equal when type and payload match."""
        if not isinstance(other, PeerMessage):
            return NotImplemented
        return type(self) is type(other) and self.payload() == other.payload()

    def __hash__(self) -> int:
        """Hash on type and payload."""
        return hash((type(self), self.payload()))

    def __repr__(self) -> str:
        """Debug representation."""
        return f"{type(self).__name__}()"


class KeepAliveMessage:
    """Keep-alive message (length = 0)."""

    def encode(self) -> bytes:
        """Encode keep-alive message."""
        return LENGTH_PREFIX.pack(0)

    def __eq__(self, other) -> bool:
        """All keep-alives are equal."""
        return isinstance(other, KeepAliveMessage)

    def __hash__(self) -> int:
        """Hash keep-alive."""
        return hash(KeepAliveMessage)

    def __repr__(self) -> str:
        """Debug representation."""
        return "KeepAliveMessage()"


class ChokeMessage(PeerMessage):
    """Choke message."""

    message_type = MessageType.CHOKE


class UnchokeMessage(PeerMessage):
    """Unchoke message."""

    message_type = MessageType.UNCHOKE


class InterestedMessage(PeerMessage):
    """Interested message."""

    message_type = MessageType.INTERESTED


class NotInterestedMessage(PeerMessage):
    """Not interested message."""

    message_type = MessageType.NOT_INTERESTED


class HaveMessage(PeerMessage):
    """Have message (announces that peer has a piece)."""

    message_type = MessageType.HAVE

    def __init__(self, piece_index: int):
        """Initialize have message."""
        self.piece_index = piece_index

    def payload(self) -> bytes:
        """Encode the piece index."""
        return _INDEX.pack(self.piece_index)

    @classmethod
    def from_payload(cls, payload: bytes) -> HaveMessage:
        """Decode have payload."""
        if len(payload) != _INDEX.size:
            msg = f"Have payload must be 4 bytes, got {len(payload)}"
            raise MessageError(msg)
        return cls(_INDEX.unpack(payload)[0])

    def __repr__(self) -> str:
        """Debug representation."""
        return f"HaveMessage(piece_index={self.piece_index})"


class BitfieldMessage(PeerMessage):
    """Bitfield message (shows which pieces the peer has)."""

    message_type = MessageType.BITFIELD

    def __init__(self, bitfield: bytes):
        """Initialize bitfield message.

        Args:
            bitfield: Bitfield bytes where each bit represents a piece, high bit first
        """
        self.bitfield = bitfield

    def payload(self) -> bytes:
        """Return the raw bitfield."""
        return self.bitfield

    @classmethod
    def from_payload(cls, payload: bytes) -> BitfieldMessage:
        """Decode bitfield payload."""
        return cls(payload)

    def has_piece(self, piece_index: int) -> bool:
        """Check if the bitfield marks ``piece_index`` as present."""
        byte_index, bit_index = divmod(piece_index, 8)
        if piece_index < 0 or byte_index >= len(self.bitfield):
            return False
        return bool(self.bitfield[byte_index] & (0x80 >> bit_index))

    def __repr__(self) -> str:
        """Debug representation."""
        return f"BitfieldMessage({len(self.bitfield)} bytes)"


class _BlockReference(PeerMessage):
    """Shared layout of request and cancel: index, begin, length."""

    def __init__(self, piece_index: int, begin: int, length: int):
        """Initialize block reference."""
        self.piece_index = piece_index
        self.begin = begin
        self.length = length

    def payload(self) -> bytes:
        """Encode index, begin and length."""
        return _BLOCK_REF.pack(self.piece_index, self.begin, self.length)

    @classmethod
    def from_payload(cls, payload: bytes):
        """Decode index, begin and length."""
        if len(payload) != _BLOCK_REF.size:
            msg = f"{cls.__name__} payload must be 12 bytes, got {len(payload)}"
            raise MessageError(msg)
        return cls(*_BLOCK_REF.unpack(payload))

    def __repr__(self) -> str:
        """Debug representation."""
        return (
            f"{type(self).__name__}(piece_index={self.piece_index}, "
            f"begin={self.begin}, length={self.length})"
        )


class RequestMessage(_BlockReference):
    """Request message (request a block from a piece)."""

    message_type = MessageType.REQUEST


class CancelMessage(_BlockReference):
    """Cancel message (cancel a previous request)."""

    message_type = MessageType.CANCEL


class PieceMessage(PeerMessage):
    """Piece message (contains a block of piece data)."""

    message_type = MessageType.PIECE

    def __init__(self, piece_index: int, begin: int, block: bytes):
        """Initialize piece message."""
        self.piece_index = piece_index
        self.begin = begin
        self.block = block

    def payload(self) -> bytes:
        """Encode index, begin and the block bytes."""
        return _PIECE_HEADER.pack(self.piece_index, self.begin) + self.block

    @classmethod
    def from_payload(cls, payload: bytes) -> PieceMessage:
        """Decode piece payload."""
        if len(payload) < _PIECE_HEADER.size:
            msg = f"Piece payload too short: {len(payload)} bytes"
            raise MessageError(msg)
        piece_index, begin = _PIECE_HEADER.unpack_from(payload)
        return cls(piece_index, begin, payload[_PIECE_HEADER.size :])

    def __repr__(self) -> str:
        """Debug representation."""
        return (
            f"PieceMessage(piece_index={self.piece_index}, "
            f"begin={self.begin}, {len(self.block)} bytes)"
        )


MESSAGE_CLASSES: dict[MessageType, type[PeerMessage]] = {
    MessageType.CHOKE: ChokeMessage,
    MessageType.UNCHOKE: UnchokeMessage,
    MessageType.INTERESTED: InterestedMessage,
    MessageType.NOT_INTERESTED: NotInterestedMessage,
    MessageType.HAVE: HaveMessage,
    MessageType.BITFIELD: BitfieldMessage,
    MessageType.REQUEST: RequestMessage,
    MessageType.PIECE: PieceMessage,
    MessageType.CANCEL: CancelMessage,
}


def decode_message(body: bytes) -> PeerMessage | KeepAliveMessage:
    """Decode the bytes that follow a frame's length prefix.

    Raises:
        MessageError: If the id is unknown or the payload does not fit it
    """
    if not body:
        return KeepAliveMessage()
    try:
        message_type = MessageType(body[0])
    except ValueError:
        msg = f"Unknown message id: {body[0]}"
        raise MessageError(msg, {"message_id": body[0]}) from None
    return MESSAGE_CLASSES[message_type].from_payload(body[1:])


def decode_frame(frame: bytes) -> PeerMessage | KeepAliveMessage:
    """Decode a complete frame including its length prefix."""
    if len(frame) < LENGTH_PREFIX.size:
        msg = f"Frame too short: {len(frame)} bytes"
        raise MessageError(msg)
    (length,) = LENGTH_PREFIX.unpack_from(frame)
    body = frame[LENGTH_PREFIX.size :]
    if len(body) != length:
        msg = f"Frame length mismatch: header says {length}, got {len(body)}"
        raise MessageError(msg)
    return decode_message(body)
