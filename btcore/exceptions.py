"""Exception hierarchy for btcore.

Every failure the core can report is a subclass of :class:`BtCoreError`,
so callers can decide per category whether to retry, skip a peer, or abort.
"""

from __future__ import annotations

from typing import Any


class BtCoreError(Exception):
    """Base exception for all btcore errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize btcore error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(BtCoreError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""


class MalformedEncoding(BencodeError):
    """Input is not valid bencode."""


class BencodeEncodeError(BencodeError):
    """Value cannot be represented in bencode."""


class TorrentError(ValidationError):
    """Torrent metadata is structurally invalid."""


class MissingField(TorrentError):
    """A required torrent field is absent."""

    def __init__(self, field: str):
        """Initialize with the name of the missing field."""
        super().__init__(f"Missing required field: {field}", {"field": field})
        self.field = field


class InvalidPieceTable(TorrentError):
    """The pieces table does not describe the content."""


class NetworkError(BtCoreError):
    """Network-related errors."""


class TrackerError(NetworkError):
    """Tracker communication errors."""


class TrackerUnreachable(TrackerError):
    """Transport-level tracker failure (retryable)."""


class TrackerProtocolError(TrackerError):
    """Tracker answered with something other than a valid announce response."""


class PeerConnectionError(NetworkError):
    """Peer connection errors."""


class PeerTimeout(PeerConnectionError):
    """A bounded peer operation did not complete in time."""


class ProtocolError(BtCoreError):
    """BitTorrent protocol errors."""


class HandshakeFailed(ProtocolError):
    """Peer handshake was malformed or for a different torrent."""


class MessageError(ProtocolError):
    """Message parsing/serialization errors."""


class IntegrityError(BtCoreError):
    """Downloaded content failed verification."""


class PieceHashMismatch(IntegrityError):
    """Assembled piece does not match its expected SHA-1 digest."""

    def __init__(self, piece_index: int, expected: bytes, actual: bytes):
        """Initialize with the piece index and both digests."""
        super().__init__(
            f"Piece {piece_index} failed hash check",
            {"expected": expected.hex(), "actual": actual.hex()},
        )
        self.piece_index = piece_index
        self.expected = expected
        self.actual = actual


class DiskError(BtCoreError):
    """Disk I/O related errors."""
