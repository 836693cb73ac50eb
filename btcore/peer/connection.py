"""Async peer connection.

One :class:`AsyncPeerConnection` drives one TCP session with one peer
through the handshake and choke/interest negotiation, then exchanges
framed messages. Every blocking socket operation goes through
:func:`btcore.utils.resilience.bounded`; a timeout or I/O error closes the
connection and surfaces as :class:`PeerTimeout` or
:class:`PeerConnectionError`. The socket is never reused after a failure.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Awaitable, TypeVar

from btcore.config import get_config
from btcore.exceptions import (
    HandshakeFailed,
    MessageError,
    PeerConnectionError,
    PeerTimeout,
)
from btcore.models import ConnectionState, NetworkConfig, PeerInfo
from btcore.peer.messages import (
    HANDSHAKE_LENGTH,
    LENGTH_PREFIX,
    BitfieldMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    PeerMessage,
    UnchokeMessage,
    decode_message,
)
from btcore.utils.resilience import bounded

T = TypeVar("T")

# Generous upper bound on a single frame; a 16 KiB block frame is 16397 bytes
MAX_MESSAGE_LENGTH = 4 * 1024 * 1024
BITFIELD_GRACE_PERIOD = 1.0


@dataclass
class PeerState:
    """Choke/interest flags and piece availability of one connection."""

    am_interested: bool = False
    peer_choking: bool = True
    bitfield: BitfieldMessage | None = None
    have: set[int] = field(default_factory=set)

    def has_piece(self, piece_index: int) -> bool | None:
        """Whether the peer advertised ``piece_index``; None if it advertised nothing."""
        if piece_index in self.have:
            return True
        if self.bitfield is not None:
            return self.bitfield.has_piece(piece_index)
        return None if not self.have else False


class AsyncPeerConnection:
    """Async connection to a single peer."""

    def __init__(
        self,
        peer: PeerInfo,
        info_hash: bytes,
        peer_id: bytes,
        config: NetworkConfig | None = None,
    ):
        """Initialize the connection.

        Args:
            peer: Address of the remote peer
            info_hash: Info hash of the torrent we want
            peer_id: Our 20-byte peer id
            config: Network configuration (defaults to the global config)
        """
        self.config = config or get_config().network
        self.peer = peer
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.remote_peer_id: bytes | None = None
        self.state = ConnectionState.DISCONNECTED
        self.peer_state = PeerState()
        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None
        self.logger = logging.getLogger(__name__)

    def __str__(self) -> str:
        """Return string representation of the connection."""
        return f"AsyncPeerConnection({self.peer}, state={self.state.value})"

    async def __aenter__(self) -> AsyncPeerConnection:
        """Run the full connection sequence on context entry."""
        try:
            await self.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        """Close the socket on context exit, including cancellation."""
        await self.close()

    @property
    def is_closed(self) -> bool:
        """Whether the connection has been closed."""
        return self.state == ConnectionState.CLOSED

    @property
    def is_active(self) -> bool:
        """Whether block requests may be issued."""
        return self.state == ConnectionState.ACTIVE and not self.peer_state.peer_choking

    async def start(self) -> None:
        """Connect, handshake, declare interest and wait to be unchoked."""
        await self.connect()
        await self.handshake()
        await self.send_interested()
        await self.wait_for_unchoke()
        self.state = ConnectionState.ACTIVE
        self.logger.info("Peer %s is active", self.peer)

    async def connect(self) -> None:
        """Open the TCP connection."""
        if self.state != ConnectionState.DISCONNECTED:
            msg = f"Cannot connect from state {self.state.value}"
            raise PeerConnectionError(msg)
        self.state = ConnectionState.CONNECTING
        self.logger.debug("Connecting to %s", self.peer)
        self.reader, self.writer = await self._guard(
            asyncio.open_connection(self.peer.ip, self.peer.port),
            "connect",
            self.config.connection_timeout,
        )

    async def handshake(self) -> bytes:
        """Exchange handshakes and return the remote peer id.

        Raises:
            HandshakeFailed: If the reply is malformed or for another torrent
        """
        if self.state != ConnectionState.CONNECTING:
            msg = f"Cannot handshake from state {self.state.value}"
            raise PeerConnectionError(msg)

        await self._write(Handshake(self.info_hash, self.peer_id).encode(), "handshake send")
        self.state = ConnectionState.HANDSHAKE_SENT

        reader = self._require_reader()
        data = await self._guard(
            reader.readexactly(HANDSHAKE_LENGTH),
            "handshake read",
            self.config.connection_timeout,
        )
        try:
            reply = Handshake.decode(data)
            if reply.info_hash != self.info_hash:
                msg = (
                    f"Info hash mismatch: expected {self.info_hash.hex()}, "
                    f"got {reply.info_hash.hex()}"
                )
                raise HandshakeFailed(msg, {"peer": str(self.peer)})
        except HandshakeFailed:
            await self.close()
            raise

        self.remote_peer_id = reply.peer_id
        self.peer.peer_id = reply.peer_id
        self.state = ConnectionState.HANDSHAKE_VERIFIED
        self.logger.debug("Handshake with %s ok, peer id %s", self.peer, reply.peer_id.hex())
        return reply.peer_id

    async def send_interested(self) -> None:
        """Read an optional initial bitfield, then send ``interested``."""
        if self.state != ConnectionState.HANDSHAKE_VERIFIED:
            msg = f"Cannot send interested from state {self.state.value}"
            raise PeerConnectionError(msg)

        self.state = ConnectionState.AWAITING_BITFIELD
        # Peers with nothing to offer may skip the bitfield entirely
        message = await self.receive_message(first_byte_timeout=BITFIELD_GRACE_PERIOD)
        if message is not None and not isinstance(message, BitfieldMessage):
            self.logger.debug("%s sent %r before any bitfield", self.peer, message)

        await self.send_message(InterestedMessage())
        self.peer_state.am_interested = True
        self.state = ConnectionState.INTERESTED

    async def wait_for_unchoke(self) -> None:
        """Block until the peer unchokes us."""
        while self.peer_state.peer_choking:
            message = await self.receive_message()
            if message is not None and not isinstance(
                message, (UnchokeMessage, ChokeMessage, HaveMessage, BitfieldMessage, KeepAliveMessage)
            ):
                self.logger.debug("Ignoring %r from %s while choked", message, self.peer)
        if self.state == ConnectionState.INTERESTED:
            self.state = ConnectionState.UNCHOKED

    async def send_message(self, message: PeerMessage | KeepAliveMessage) -> None:
        """Frame and send one message."""
        self.logger.debug("-> %s %r", self.peer, message)
        await self._write(message.encode(), f"send {type(message).__name__}")

    async def receive_message(
        self,
        first_byte_timeout: float | None = None,
    ) -> PeerMessage | KeepAliveMessage | None:
        """Read and decode one frame.

        Choke state and piece availability are updated before the message
        is returned. With ``first_byte_timeout`` set, ``None`` is returned if
        no frame starts within that window; once a frame has started it is
        read under the normal message timeout.

        Raises:
            PeerTimeout: If the frame does not arrive in time
            MessageError: If the frame is oversized or cannot be decoded
        """
        reader = self._require_reader()

        if first_byte_timeout is not None:
            try:
                header = await asyncio.wait_for(
                    reader.readexactly(LENGTH_PREFIX.size),
                    timeout=first_byte_timeout,
                )
            except asyncio.TimeoutError:
                return None
            except (asyncio.IncompleteReadError, OSError) as e:
                await self.close()
                msg = f"{self.peer} closed the connection: {e}"
                raise PeerConnectionError(msg) from e
        else:
            header = await self._read(LENGTH_PREFIX.size, "frame header read")

        (length,) = LENGTH_PREFIX.unpack(header)
        if length > MAX_MESSAGE_LENGTH:
            await self.close()
            msg = f"Frame of {length} bytes from {self.peer} exceeds limit"
            raise MessageError(msg)

        body = await self._read(length, "frame body read") if length else b""
        try:
            message = decode_message(body)
        except MessageError:
            await self.close()
            raise

        self._track(message)
        self.logger.debug("<- %s %r", self.peer, message)
        return message

    def _track(self, message: PeerMessage | KeepAliveMessage) -> None:
        if isinstance(message, ChokeMessage):
            self.peer_state.peer_choking = True
        elif isinstance(message, UnchokeMessage):
            self.peer_state.peer_choking = False
        elif isinstance(message, BitfieldMessage):
            self.peer_state.bitfield = message
        elif isinstance(message, HaveMessage):
            self.peer_state.have.add(message.piece_index)

    async def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        writer, self.writer = self.writer, None
        self.reader = None
        if writer is not None:
            writer.close()
            with contextlib.suppress(OSError, asyncio.TimeoutError):
                await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
        self.logger.debug("Closed connection to %s", self.peer)

    def _require_reader(self) -> asyncio.StreamReader:
        if self.reader is None or self.state == ConnectionState.CLOSED:
            msg = f"Connection to {self.peer} is not open"
            raise PeerConnectionError(msg)
        return self.reader

    async def _read(self, n: int, description: str) -> bytes:
        reader = self._require_reader()
        return await self._guard(reader.readexactly(n), description, self.config.message_timeout)

    async def _write(self, data: bytes, description: str) -> None:
        if self.writer is None or self.state == ConnectionState.CLOSED:
            msg = f"Connection to {self.peer} is not open"
            raise PeerConnectionError(msg)
        self.writer.write(data)
        await self._guard(self.writer.drain(), description, self.config.message_timeout)

    async def _guard(self, operation: Awaitable[T], description: str, timeout: float) -> T:
        """Run a blocking socket operation under a deadline, closing on failure."""
        try:
            return await bounded(operation, timeout, f"{description} with {self.peer}")
        except PeerTimeout:
            self.logger.warning("%s with %s timed out", description, self.peer)
            await self.close()
            raise
        except asyncio.IncompleteReadError as e:
            await self.close()
            msg = f"{self.peer} closed the connection during {description}"
            raise PeerConnectionError(msg) from e
        except OSError as e:
            await self.close()
            msg = f"{description} with {self.peer} failed: {e}"
            raise PeerConnectionError(msg) from e
