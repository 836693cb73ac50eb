"""Pytest configuration and shared fixtures for btcore tests."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import math
import os
import struct
import threading

import pytest
import pytest_asyncio

from btcore import config as config_module
from btcore.core.bencode import encode
from btcore.models import NetworkConfig, PeerInfo
from btcore.peer.messages import (
    BitfieldMessage,
    ChokeMessage,
    Handshake,
    InterestedMessage,
    KeepAliveMessage,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
    decode_message,
)

SAMPLE_PIECE_HASHES = (
    "e876f67a2a8886e8f36b136726c30fa29703022d"
    "6e2275e604a0766656736e81ff10b55204ad8d35"
    "f00d937a0213df1982bc8d097227ad9e909acc17"
)
SAMPLE_INFO_HASH = "d69f91e6b2ae4c542468d1073a71d4ea13879a7f"


def pytest_configure(config):
    """Register project markers."""
    for name, desc in [
        ("unit", "marks tests as unit tests"),
        ("core", "marks tests as core functionality tests"),
        ("peer", "marks tests as peer protocol tests"),
        ("piece", "marks tests as piece management tests"),
        ("tracker", "marks tests as tracker tests"),
        ("cli", "marks tests as CLI tests"),
        ("integration", "marks tests as integration tests"),
    ]:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Keep tests away from user config files and BTCORE_* variables."""
    for name in list(os.environ):
        if name.startswith("BTCORE_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    config_module.reset_config()
    yield
    config_module.reset_config()


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


def build_torrent(
    content: bytes,
    piece_length: int,
    name: bytes = b"sample.txt",
    announce: bytes = b"http://tracker.example/announce",
) -> bytes:
    """Bencode a single-file torrent describing ``content``."""
    pieces = b"".join(
        hashlib.sha1(content[i : i + piece_length]).digest()
        for i in range(0, len(content), piece_length)
    )
    return encode(
        {
            b"announce": announce,
            b"created by": b"btcore tests",
            b"info": {
                b"length": len(content),
                b"name": name,
                b"piece length": piece_length,
                b"pieces": pieces,
            },
        }
    )


@pytest.fixture
def sample_content() -> bytes:
    """Content spanning three pieces, the last one short and not block aligned."""
    return bytes((i * 7 + i // 251) % 256 for i in range(2 * 32768 + 20000))


@pytest.fixture
def fast_network() -> NetworkConfig:
    """Network settings with short timeouts for tests."""
    return NetworkConfig(
        connection_timeout=2.0,
        message_timeout=2.0,
        tracker_timeout=2.0,
        tracker_max_retries=0,
        tracker_backoff_base=0.0,
        pipeline_depth=4,
        piece_max_retries=2,
    )


class FakePeer:
    """In-process seeding peer speaking just enough of the wire protocol."""

    def __init__(
        self,
        info_hash: bytes,
        content: bytes,
        piece_length: int,
        peer_id: bytes = b"-FP0001-abcdefghijkl",
        reply_info_hash: bytes | None = None,
        send_bitfield: bool = True,
        keepalive_first: bool = False,
        corrupt_pieces: tuple[int, ...] = (),
        batch: int = 1,
        choke_on_first_request: bool = False,
        stall_after_handshake: bool = False,
        stall_requests: bool = False,
        truncate_blocks: tuple[tuple[int, int], ...] = (),
        handshake_delay: float = 0.0,
        block_delay: float = 0.0,
    ):
        self.info_hash = info_hash
        self.content = content
        self.piece_length = piece_length
        self.peer_id = peer_id
        self.reply_info_hash = reply_info_hash or info_hash
        self.send_bitfield = send_bitfield
        self.keepalive_first = keepalive_first
        self.corrupt_pieces = set(corrupt_pieces)
        self.batch = batch
        self.choke_on_first_request = choke_on_first_request
        self.stall_after_handshake = stall_after_handshake
        self.stall_requests = stall_requests
        self.truncate_blocks = set(truncate_blocks)
        self.handshake_delay = handshake_delay
        self.block_delay = block_delay
        self.handshakes: list[bytes] = []
        self.received: list = []
        self.requests: list[RequestMessage] = []
        self.disconnected = asyncio.Event()
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()
        self._choked_once = False

    @property
    def num_pieces(self) -> int:
        return math.ceil(len(self.content) / self.piece_length)

    def piece_size(self, index: int) -> int:
        return min(self.piece_length, len(self.content) - index * self.piece_length)

    async def start(self) -> PeerInfo:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        port = self._server.sockets[0].getsockname()[1]
        return PeerInfo(ip="127.0.0.1", port=port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            for writer in list(self._writers):
                writer.close()
            await self._server.wait_closed()

    def _bitfield(self) -> bytes:
        bits = bytearray(math.ceil(self.num_pieces / 8))
        for index in range(self.num_pieces):
            bits[index // 8] |= 0x80 >> (index % 8)
        return bytes(bits)

    def _block(self, request: RequestMessage) -> PieceMessage:
        start = request.piece_index * self.piece_length + request.begin
        data = bytearray(self.content[start : start + request.length])
        if request.piece_index in self.corrupt_pieces and request.begin == 0:
            data[0] ^= 0x01
        if (request.piece_index, request.begin) in self.truncate_blocks:
            # Short only once, the re-request gets the full block
            self.truncate_blocks.discard((request.piece_index, request.begin))
            del data[-1]
        return PieceMessage(request.piece_index, request.begin, bytes(data))

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            self.handshakes.append(await reader.readexactly(68))
            if self.stall_after_handshake:
                await reader.read()
                return
            if self.handshake_delay:
                await asyncio.sleep(self.handshake_delay)
            writer.write(Handshake(self.reply_info_hash, self.peer_id).encode())
            if self.keepalive_first:
                writer.write(KeepAliveMessage().encode())
            if self.send_bitfield:
                writer.write(BitfieldMessage(self._bitfield()).encode())
            await writer.drain()

            pending: list[RequestMessage] = []
            while True:
                (length,) = struct.unpack("!I", await reader.readexactly(4))
                message = decode_message(await reader.readexactly(length) if length else b"")
                self.received.append(message)
                if isinstance(message, InterestedMessage):
                    writer.write(UnchokeMessage().encode())
                elif isinstance(message, RequestMessage):
                    self.requests.append(message)
                    if self.stall_requests:
                        continue
                    if self.choke_on_first_request and not self._choked_once:
                        # Choking discards the outstanding request
                        self._choked_once = True
                        writer.write(ChokeMessage().encode())
                        writer.write(UnchokeMessage().encode())
                        await writer.drain()
                        continue
                    pending.append(message)
                    last = message.begin + message.length >= self.piece_size(message.piece_index)
                    if len(pending) >= self.batch or last:
                        if self.block_delay:
                            await asyncio.sleep(self.block_delay)
                        for request in reversed(pending):
                            writer.write(self._block(request).encode())
                        pending.clear()
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
            self.disconnected.set()


@pytest_asyncio.fixture
async def fake_peer_factory():
    """Start fake peers and stop them after the test."""
    peers: list[FakePeer] = []

    async def factory(*args, **kwargs) -> tuple[FakePeer, PeerInfo]:
        peer = FakePeer(*args, **kwargs)
        address = await peer.start()
        peers.append(peer)
        return peer, address

    yield factory
    for peer in peers:
        await peer.stop()


@pytest.fixture
def torrent_factory():
    """Return the single-file torrent builder."""
    return build_torrent


@pytest.fixture
def codecrafters_metainfo() -> dict:
    """Decoded metainfo of a published sample torrent with a known info hash."""
    return {
        b"announce": b"http://bittorrent-test-tracker.codecrafters.io/announce",
        b"created by": b"mktorrent 1.1",
        b"info": {
            b"length": 92063,
            b"name": b"sample.txt",
            b"piece length": 32768,
            b"pieces": bytes.fromhex(SAMPLE_PIECE_HASHES),
        },
    }


@pytest.fixture
def codecrafters_info_hash() -> str:
    return SAMPLE_INFO_HASH


@pytest.fixture
def threaded_peer_factory():
    """Run fake peers on a background event loop, for code that calls asyncio.run."""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    peers: list[FakePeer] = []

    def factory(*args, **kwargs) -> tuple[FakePeer, PeerInfo]:
        async def start() -> tuple[FakePeer, PeerInfo]:
            peer = FakePeer(*args, **kwargs)
            return peer, await peer.start()

        peer, address = asyncio.run_coroutine_threadsafe(start(), loop).result(timeout=5)
        peers.append(peer)
        return peer, address

    yield factory
    for peer in peers:
        asyncio.run_coroutine_threadsafe(peer.stop(), loop).result(timeout=5)
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()
