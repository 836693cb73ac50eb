"""Async HTTP tracker client.

Announces to a torrent's tracker and decodes the compact peer list from
the response.
"""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from typing import Any

import aiohttp
from yarl import URL

from btcore.config import get_config
from btcore.core.bencode import decode
from btcore.exceptions import (
    MalformedEncoding,
    TrackerProtocolError,
    TrackerUnreachable,
)
from btcore.models import NetworkConfig, PeerInfo, TorrentInfo, TrackerResponse
from btcore.utils.backoff import ExponentialBackoff
from btcore.utils.resilience import call_with_retry

COMPACT_PEER_LENGTH = 6

logger = logging.getLogger(__name__)


def parse_compact_peers(peers_data: bytes) -> list[PeerInfo]:
    """Parse compact peer format.

    In compact format, peers are encoded as 6 bytes per peer:
    - 4 bytes: IPv4 address (network byte order)
    - 2 bytes: port (network byte order)

    Raises:
        TrackerProtocolError: If the data length is not a multiple of 6
    """
    if len(peers_data) % COMPACT_PEER_LENGTH != 0:
        msg = f"Invalid compact peer data length: {len(peers_data)} bytes"
        raise TrackerProtocolError(msg)

    peers = []
    for start in range(0, len(peers_data), COMPACT_PEER_LENGTH):
        record = peers_data[start : start + COMPACT_PEER_LENGTH]
        ip = ".".join(str(b) for b in record[:4])
        port = int.from_bytes(record[4:6], byteorder="big")
        if port == 0:
            logger.debug("Skipping compact peer %s with port 0", ip)
            continue
        peers.append(PeerInfo(ip=ip, port=port))
    return peers


def parse_announce_response(response_data: bytes) -> TrackerResponse:
    """Decode and validate an announce response body.

    Raises:
        TrackerProtocolError: If the body is not a valid compact announce response
    """
    try:
        decoded = decode(response_data)
    except MalformedEncoding as e:
        msg = f"Tracker response is not valid bencode: {e}"
        raise TrackerProtocolError(msg) from e

    if not isinstance(decoded, dict):
        msg = "Tracker response is not a dictionary"
        raise TrackerProtocolError(msg)

    if b"failure reason" in decoded:
        reason = _text(decoded[b"failure reason"])
        msg = f"Tracker failure: {reason}"
        raise TrackerProtocolError(msg, {"failure_reason": reason})

    interval = decoded.get(b"interval")
    if not isinstance(interval, int):
        msg = "Missing or invalid interval in tracker response"
        raise TrackerProtocolError(msg)

    peers_data = decoded.get(b"peers")
    if not isinstance(peers_data, bytes):
        msg = "Missing compact peers in tracker response"
        raise TrackerProtocolError(msg)

    warning = decoded.get(b"warning message")
    return TrackerResponse(
        interval=interval,
        peers=parse_compact_peers(peers_data),
        min_interval=_optional_int(decoded, b"min interval"),
        complete=_optional_int(decoded, b"complete"),
        incomplete=_optional_int(decoded, b"incomplete"),
        warning_message=_text(warning) if isinstance(warning, bytes) else None,
    )


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _optional_int(data: dict[bytes, Any], key: bytes) -> int | None:
    value = data.get(key)
    return value if isinstance(value, int) else None


class AsyncTrackerClient:
    """Async client for announcing to HTTP trackers."""

    def __init__(
        self,
        peer_id: bytes,
        port: int | None = None,
        config: NetworkConfig | None = None,
    ):
        """Initialize the async tracker client.

        Args:
            peer_id: Our 20-byte peer id, stable for the session
            port: Port we report to the tracker (defaults to the configured listen port)
            config: Network configuration (defaults to the global config)
        """
        if len(peer_id) != 20:
            msg = f"Peer ID must be 20 bytes, got {len(peer_id)}"
            raise ValueError(msg)
        self.config = config or get_config().network
        self.peer_id = peer_id
        self.port = port or self.config.listen_port
        self.session: aiohttp.ClientSession | None = None
        self.logger = logging.getLogger(__name__)

    async def __aenter__(self) -> AsyncTrackerClient:
        """Start the client on context entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        """Stop the client on context exit."""
        await self.stop()

    async def start(self) -> None:
        """Open the HTTP session."""
        if self.session is not None:
            return
        timeout = aiohttp.ClientTimeout(total=self.config.tracker_timeout)
        self.session = aiohttp.ClientSession(timeout=timeout)
        self.logger.debug("Tracker client started")

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self.session is not None:
            await self.session.close()
            self.session = None
        self.logger.debug("Tracker client stopped")

    def build_announce_url(
        self,
        torrent: TorrentInfo,
        uploaded: int = 0,
        downloaded: int = 0,
        left: int | None = None,
    ) -> str:
        """Build the announce URL with all query parameters.

        ``info_hash`` and ``peer_id`` are raw bytes and are percent-encoded
        byte by byte.
        """
        params = {
            "info_hash": torrent.info_hash,
            "peer_id": self.peer_id,
            "port": str(self.port),
            "uploaded": str(uploaded),
            "downloaded": str(downloaded),
            "left": str(torrent.total_length if left is None else left),
            "compact": "1",
        }
        query = urllib.parse.urlencode(params, quote_via=urllib.parse.quote)
        separator = "&" if "?" in torrent.announce else "?"
        return f"{torrent.announce}{separator}{query}"

    async def announce(
        self,
        torrent: TorrentInfo,
        uploaded: int = 0,
        downloaded: int = 0,
        left: int | None = None,
    ) -> TrackerResponse:
        """Announce to the tracker and return its peer list.

        Transport failures are retried with exponential backoff; malformed
        responses are not.

        Raises:
            TrackerUnreachable: If every attempt failed at the transport level
            TrackerProtocolError: If the tracker answered with an invalid response
        """
        url = self.build_announce_url(torrent, uploaded, downloaded, left)
        backoff = ExponentialBackoff.from_config(self.config)
        response = await call_with_retry(
            lambda: self._announce_once(url),
            retries=self.config.tracker_max_retries,
            retry_on=(TrackerUnreachable,),
            backoff=backoff,
            description=f"Announce to {torrent.announce}",
        )
        self.logger.info(
            "Tracker %s returned %d peers (interval %ds)",
            torrent.announce,
            len(response.peers),
            response.interval,
        )
        if response.warning_message:
            self.logger.warning("Tracker warning: %s", response.warning_message)
        return response

    async def _announce_once(self, url: str) -> TrackerResponse:
        body = await self._make_request(url)
        return parse_announce_response(body)

    async def _make_request(self, url: str) -> bytes:
        """Make an HTTP GET request and return the full body."""
        if self.session is None:
            msg = "Tracker client not started"
            raise RuntimeError(msg)
        self.logger.debug("GET %s", url)
        try:
            # The query is already percent-encoded; keep it byte-exact
            async with self.session.get(URL(url, encoded=True)) as response:
                if response.status != 200:
                    msg = f"HTTP {response.status}: {response.reason}"
                    raise TrackerUnreachable(msg, {"status": response.status})
                return await response.read()
        except aiohttp.ClientError as e:
            msg = f"Network error: {e}"
            raise TrackerUnreachable(msg) from e
        except asyncio.TimeoutError as e:
            msg = f"Tracker request timed out after {self.config.tracker_timeout:g}s"
            raise TrackerUnreachable(msg) from e
