"""btcore - a minimal BitTorrent client core.

Bencode codec, torrent metadata parsing, HTTP tracker announce, the peer
wire protocol and verified piece download.
"""

from __future__ import annotations

from btcore.core.bencode import decode, encode
from btcore.core.torrent import TorrentParser
from btcore.models import PeerInfo, TorrentInfo, TrackerResponse
from btcore.peer.connection import AsyncPeerConnection
from btcore.piece.downloader import PieceDownloader, download_torrent
from btcore.tracker import AsyncTrackerClient

__version__ = "0.1.0"

__all__ = [
    "AsyncPeerConnection",
    "AsyncTrackerClient",
    "PeerInfo",
    "PieceDownloader",
    "TorrentInfo",
    "TorrentParser",
    "TrackerResponse",
    "__version__",
    "decode",
    "download_torrent",
    "encode",
]
