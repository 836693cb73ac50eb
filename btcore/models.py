"""Pydantic models for btcore.

Provides validated data models for torrent metadata, tracker responses,
peer addresses and configuration.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator

BLOCK_SIZE = 16384
HASH_LENGTH = 20


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ConnectionState(str, Enum):
    """Peer connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKE_SENT = "handshake_sent"
    HANDSHAKE_VERIFIED = "handshake_verified"
    AWAITING_BITFIELD = "awaiting_bitfield"
    INTERESTED = "interested"
    UNCHOKED = "unchoked"
    ACTIVE = "active"
    CLOSED = "closed"


class MessageType(int, Enum):
    """BitTorrent message types."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8


class PeerInfo(BaseModel):
    """Peer information."""

    ip: str = Field(..., description="Peer IP address")
    port: int = Field(..., ge=1, le=65535, description="Peer port number")
    peer_id: bytes | None = Field(None, description="Peer ID")

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v):
        """Validate IP address format."""
        if not v:
            msg = "IP address cannot be empty"
            raise ValueError(msg)
        return v

    @classmethod
    def from_address(cls, address: str) -> PeerInfo:
        """Build peer info from an ``ip:port`` string."""
        ip, sep, port = address.rpartition(":")
        if not sep or not port.isdigit():
            msg = f"Invalid peer address: {address!r}"
            raise ValueError(msg)
        return cls(ip=ip, port=int(port))

    def __str__(self) -> str:
        """String representation of peer info."""
        return f"{self.ip}:{self.port}"

    def __hash__(self) -> int:
        """Hash peer info for use as dictionary key."""
        return hash((self.ip, self.port))

    def __eq__(self, other) -> bool:
        """Equality comparison for peer info."""
        if not isinstance(other, PeerInfo):
            return False
        return self.ip == other.ip and self.port == other.port


class TrackerResponse(BaseModel):
    """Decoded announce response."""

    interval: int = Field(..., ge=0, description="Re-announce interval in seconds")
    peers: list[PeerInfo] = Field(default_factory=list, description="Peer list")
    min_interval: int | None = Field(None, description="Minimum announce interval")
    complete: int | None = Field(None, description="Number of seeders")
    incomplete: int | None = Field(None, description="Number of leechers")
    warning_message: str | None = Field(None, description="Tracker warning")


class TorrentInfo(BaseModel):
    """Torrent information."""

    name: str = Field(..., description="Torrent name")
    info_hash: bytes = Field(
        ...,
        min_length=HASH_LENGTH,
        max_length=HASH_LENGTH,
        description="Info hash",
    )
    announce: str = Field(..., description="Announce URL")
    total_length: int = Field(..., ge=0, description="Total length in bytes")
    piece_length: int = Field(..., gt=0, description="Piece length in bytes")
    pieces: list[bytes] = Field(default_factory=list, description="Piece hashes")
    comment: str | None = Field(None, description="Torrent comment")
    created_by: str | None = Field(None, description="Created by")
    creation_date: int | None = Field(None, description="Creation date")

    model_config = {"frozen": True}

    @property
    def num_pieces(self) -> int:
        """Number of pieces in the torrent."""
        return len(self.pieces)

    @property
    def info_hash_hex(self) -> str:
        """Info hash as lowercase hex."""
        return self.info_hash.hex()

    def piece_size(self, piece_index: int) -> int:
        """Return the byte length of a piece; only the last one may be short."""
        if piece_index < 0 or piece_index >= self.num_pieces:
            msg = f"Invalid piece index: {piece_index}"
            raise IndexError(msg)
        if piece_index == self.num_pieces - 1:
            return self.total_length - self.piece_length * (self.num_pieces - 1)
        return self.piece_length

    def piece_hash(self, piece_index: int) -> bytes:
        """Return the expected SHA-1 digest of a piece."""
        if piece_index < 0 or piece_index >= self.num_pieces:
            msg = f"Invalid piece index: {piece_index}"
            raise IndexError(msg)
        return self.pieces[piece_index]


class NetworkConfig(BaseModel):
    """Network configuration."""

    listen_port: int = Field(default=6881, ge=1, le=65535, description="Listen port")
    connection_timeout: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description="TCP connect and handshake timeout in seconds",
    )
    message_timeout: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description="Timeout for each framed peer read or write in seconds",
    )
    pipeline_depth: int = Field(
        default=5,
        ge=1,
        le=128,
        description="Outstanding block requests per connection",
    )
    tracker_timeout: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description="Tracker HTTP request timeout in seconds",
    )
    tracker_max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Retries after a transport-level tracker failure",
    )
    tracker_backoff_base: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Initial tracker retry delay in seconds",
    )
    tracker_backoff_max: float = Field(
        default=60.0,
        ge=0.0,
        le=3600.0,
        description="Longest tracker retry delay in seconds",
    )
    piece_max_retries: int = Field(
        default=3,
        ge=0,
        le=50,
        description="Re-downloads of a piece after a hash mismatch",
    )
    peer_id_prefix: str = Field(
        default="-BC0100-",
        min_length=1,
        max_length=20,
        description="Azureus-style peer id prefix",
    )


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.WARNING, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log records instead of colored text",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Main configuration model."""

    network: NetworkConfig = Field(
        default_factory=NetworkConfig,
        description="Network configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )
